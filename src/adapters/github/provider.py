"""`SourceControlProvider` real sobre la API REST de GitHub.

Por qué esta forma:
- Cada llamada crea o reconcilia: primero GET, creación ante 404, y los
  conflictos documentados de "ya existe" cuentan como éxito.
- Los secretos se sellan en el cliente contra la clave pública publicada y
  nunca se loguean.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from adapters.github.client import GitHubRestClient
from adapters.github.secrets import seal_secret
from adapters.http_client import build_github_client
from core.config import AppSettings
from core.domain.errors import AlreadyExistsError, ValidationError
from core.domain.models import BranchProtectionRules, SecretScope

logger = logging.getLogger(__name__)

OIDC_ISSUER_VARIABLE = "OIDC_ISSUER_URL"
OIDC_SUBJECT_VARIABLE = "OIDC_SUBJECT"


def protection_payload(rules: BranchProtectionRules) -> dict[str, Any]:
    return {
        "required_status_checks": {
            "strict": rules.strict_checks,
            "contexts": list(rules.required_checks),
        },
        "enforce_admins": False,
        "required_pull_request_reviews": {
            "dismiss_stale_reviews": True,
            "required_approving_review_count": rules.required_reviews,
        },
        "restrictions": None,
        "required_linear_history": rules.require_linear_history,
        "allow_force_pushes": rules.allow_force_pushes,
        "allow_deletions": rules.allow_deletions,
        "required_conversation_resolution": rules.require_conversation_resolution,
    }


class GitHubSourceControlProvider:
    def __init__(
        self,
        settings: AppSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or AppSettings()
        self._rest = GitHubRestClient(client or build_github_client(self._settings))
        self._viewer: dict[str, Any] | None = None
        self._repo_ids: dict[str, int] = {}

    async def aclose(self) -> None:
        await self._rest.aclose()

    async def _current_user(self) -> dict[str, Any]:
        if self._viewer is None:
            self._viewer = await self._rest.get_json("/user")
        return self._viewer

    async def _repository_id(self, org: str, repo: str) -> int:
        key = f"{org}/{repo}"
        if key not in self._repo_ids:
            data = await self._rest.get_json(f"/repos/{org}/{repo}")
            self._repo_ids[key] = int(data["id"])
        return self._repo_ids[key]

    async def create_or_get_repository(self, org: str, name: str, private: bool) -> None:
        existing = await self._rest.find(f"/repos/{org}/{name}")
        if existing is not None:
            logger.info("Reusing repository %s/%s", org, name)
            self._repo_ids[f"{org}/{name}"] = int(existing.json()["id"])
            return

        viewer = await self._current_user()
        path = "/user/repos" if str(viewer.get("login", "")).lower() == org.lower() else f"/orgs/{org}/repos"
        body = {
            "name": name,
            "private": private,
            "auto_init": True,
            "description": "Infrastructure and application code, deployed through OIDC federation",
        }
        logger.info("Creating repository %s/%s (private=%s)", org, name, private)
        try:
            response = await self._rest.request("POST", path, json=body)
        except AlreadyExistsError:
            logger.info("Repository %s/%s appeared concurrently, reusing", org, name)
            return
        self._repo_ids[f"{org}/{name}"] = int(response.json()["id"])

    async def ensure_branch(self, org: str, repo: str, branch: str, from_branch: str) -> None:
        found = await self._rest.find(f"/repos/{org}/{repo}/branches/{branch}")
        if found is not None:
            return
        ref = await self._rest.get_json(f"/repos/{org}/{repo}/git/ref/heads/{from_branch}")
        sha = ref["object"]["sha"]
        try:
            await self._rest.request(
                "POST",
                f"/repos/{org}/{repo}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": sha},
            )
        except AlreadyExistsError:
            return
        logger.info("Created branch %s from %s in %s/%s", branch, from_branch, org, repo)

    async def configure_branch_protection(
        self,
        org: str,
        repo: str,
        branch: str,
        rules: BranchProtectionRules,
    ) -> None:
        await self._rest.request(
            "PUT",
            f"/repos/{org}/{repo}/branches/{branch}/protection",
            json=protection_payload(rules),
        )

    async def create_environment(self, org: str, repo: str, name: str, require_reviewers: bool) -> None:
        body: dict[str, Any] = {}
        if require_reviewers:
            viewer = await self._current_user()
            body["reviewers"] = [{"type": "User", "id": int(viewer["id"])}]
        await self._rest.request("PUT", f"/repos/{org}/{repo}/environments/{name}", json=body)

    async def set_secret(
        self,
        org: str,
        repo: str,
        scope: SecretScope,
        key: str,
        value: str,
        environment: str | None = None,
    ) -> None:
        if scope is SecretScope.ENVIRONMENT:
            if not environment:
                raise ValidationError("environment", "required for environment-scoped secrets")
            repo_id = await self._repository_id(org, repo)
            base = f"/repositories/{repo_id}/environments/{environment}/secrets"
        else:
            base = f"/repos/{org}/{repo}/actions/secrets"

        public_key = await self._rest.get_json(f"{base}/public-key")
        body = {
            "encrypted_value": seal_secret(public_key["key"], value),
            "key_id": public_key["key_id"],
        }
        await self._rest.request("PUT", f"{base}/{key}", json=body)
        logger.debug("Stored secret %s (%s) in %s/%s", key, environment or scope.value, org, repo)

    async def _set_variable(self, org: str, repo: str, environment: str, name: str, value: str) -> None:
        base = f"/repos/{org}/{repo}/environments/{environment}/variables"
        try:
            await self._rest.request("POST", base, json={"name": name, "value": value}, exists_on=(409,))
        except AlreadyExistsError:
            await self._rest.request("PATCH", f"{base}/{name}", json={"name": name, "value": value})

    async def register_federated_identity_consumer(
        self,
        org: str,
        repo: str,
        environment: str,
        issuer_url: str,
        subject_pattern: str,
    ) -> None:
        await self._rest.request(
            "PUT",
            f"/repos/{org}/{repo}/actions/oidc/customization/sub",
            json={"use_default": True},
        )
        await self._set_variable(org, repo, environment, OIDC_ISSUER_VARIABLE, issuer_url)
        await self._set_variable(org, repo, environment, OIDC_SUBJECT_VARIABLE, subject_pattern)

    async def commit_workflow(self, org: str, repo: str, name: str, content: str, branch: str) -> bool:
        path = f"/repos/{org}/{repo}/contents/.github/workflows/{name}"
        existing = await self._rest.find(f"{path}?ref={branch}")
        body: dict[str, Any] = {
            "content": base64.b64encode(content.encode()).decode(),
            "branch": branch,
        }
        if existing is None:
            body["message"] = f"Add {name} workflow"
        else:
            current = existing.json()
            if base64.b64decode(current.get("content", "")).decode() == content:
                logger.debug("Workflow %s already up to date in %s/%s", name, org, repo)
                return False
            body["message"] = f"Update {name} workflow"
            body["sha"] = current["sha"]
        await self._rest.request("PUT", path, json=body)
        logger.info("%s in %s/%s@%s", body["message"], org, repo, branch)
        return True
