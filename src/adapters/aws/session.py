"""Sesiones aioboto3 y traducción de errores de botocore.

Por qué aquí:
- El proveedor nunca captura excepciones del SDK por su cuenta; todo pasa por
  `translate_client_error` hacia la taxonomía del Core.
- Las credenciales del rol asumido solo viven dentro de un bloque `async with`,
  limitadas a una llamada del proveedor.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import aioboto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from core.domain.errors import (
    AlreadyExistsError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    ProvisioningError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

SESSION_NAME = "account-bootstrap"

ALREADY_EXISTS_CODES = frozenset(
    {
        "EntityAlreadyExists",
        "DuplicateRecordException",
        "DuplicateAccountException",
    }
)
TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalFailure",
        "InternalError",
        "InternalErrorException",
        "ConcurrentModificationException",
    }
)
PERMISSION_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "AccessDeniedForDependencyException",
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidClientTokenId",
        "AWSOrganizationsNotInUseException",
    }
)
NOT_FOUND_CODES = frozenset(
    {
        "NoSuchEntity",
        "NotFoundException",
        "AccountNotFoundException",
        "ParentNotFoundException",
        "OrganizationalUnitNotFoundException",
        "DestinationParentNotFoundException",
        "SourceParentNotFoundException",
    }
)


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def translate_client_error(exc: Exception, *, action: str, account_id: str | None = None) -> ProvisioningError:
    """Map a botocore exception onto the provisioning error taxonomy."""

    if isinstance(exc, ClientError):
        code = error_code(exc)
        message = exc.response.get("Error", {}).get("Message") or str(exc)
        text = f"{action}: {code}: {message}"
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        if code in ALREADY_EXISTS_CODES:
            return AlreadyExistsError(text, account_id=account_id)
        if code in TRANSIENT_CODES or status >= 500:
            return TransientProviderError(text, account_id=account_id)
        if code in PERMISSION_CODES:
            return PermissionDeniedError(text, account_id=account_id)
        if code in NOT_FOUND_CODES:
            return NotFoundError(text, account_id=account_id)
        return ProviderError(text, account_id=account_id)
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientProviderError(f"{action}: {exc}", account_id=account_id)
    if isinstance(exc, NoCredentialsError):
        return PermissionDeniedError(f"{action}: no AWS credentials available", account_id=account_id)
    if isinstance(exc, BotoCoreError):
        return ProviderError(f"{action}: {exc}", account_id=account_id)
    return ProviderError(f"{action}: {exc!r}", account_id=account_id)


@asynccontextmanager
async def aws_errors(action: str, *, account_id: str | None = None) -> AsyncIterator[None]:
    """Translate botocore failures raised inside the block."""

    try:
        yield
    except ProvisioningError:
        raise
    except (ClientError, BotoCoreError) as exc:
        error = translate_client_error(exc, action=action, account_id=account_id)
        if isinstance(error, ProviderError):
            logger.exception("%s: unexpected AWS error", action)
        raise error from exc


@dataclass(frozen=True)
class AssumedCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str

    def as_env(self, region: str) -> dict[str, str]:
        """Variables for a child process; never written to the parent env."""

        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_SESSION_TOKEN": self.session_token,
            "AWS_REGION": region,
            "AWS_DEFAULT_REGION": region,
        }


def management_session(*, profile: str | None, region: str) -> Any:
    return aioboto3.Session(profile_name=profile, region_name=region)


async def assume_role(session: Any, role_arn: str, *, region: str, account_id: str) -> AssumedCredentials:
    async with aws_errors("sts:AssumeRole", account_id=account_id):
        async with session.client("sts", region_name=region) as sts:
            response = await sts.assume_role(RoleArn=role_arn, RoleSessionName=SESSION_NAME)
    creds = response["Credentials"]
    return AssumedCredentials(
        access_key_id=creds["AccessKeyId"],
        secret_access_key=creds["SecretAccessKey"],
        session_token=creds["SessionToken"],
    )


@asynccontextmanager
async def assumed_role_session(
    session: Any,
    role_arn: str,
    *,
    region: str,
    account_id: str,
) -> AsyncIterator[tuple[Any, AssumedCredentials]]:
    """Yield a session acting inside the member account, plus its credentials."""

    creds = await assume_role(session, role_arn, region=region, account_id=account_id)
    logger.debug("Assumed %s for account %s", role_arn, account_id)
    scoped = aioboto3.Session(
        aws_access_key_id=creds.access_key_id,
        aws_secret_access_key=creds.secret_access_key,
        aws_session_token=creds.session_token,
        region_name=region,
    )
    yield scoped, creds
