"""Secret encryption for the Actions secrets API (libsodium sealed box)."""

from __future__ import annotations

import base64

from nacl import encoding, public


def seal_secret(public_key: str, value: str) -> str:
    """Encrypt `value` against the repository/environment public key (base64 in, base64 out)."""

    key = public.PublicKey(public_key.encode("utf-8"), encoding.Base64Encoder())
    sealed = public.SealedBox(key).encrypt(value.encode("utf-8"))
    return base64.b64encode(sealed).decode("utf-8")
