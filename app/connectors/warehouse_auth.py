"""
BigQuery service-account authentication

Builds an RS256-signed JWT bearer assertion from the service account key and
exchanges it at the OAuth token endpoint for a short-lived access token
(urn:ietf:params:oauth:grant-type:jwt-bearer). No retry at this layer: a
failed exchange aborts the run, and the caller re-invokes it.
"""
import json
import time
from typing import Any, Dict, Optional, Union

import aiohttp
from google.auth import crypt, jwt

from app.config import get_settings
from app.utils.logger import log

settings = get_settings()

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class AuthError(Exception):
    """Credential, signing or token-exchange failure. Fatal for the run."""


def load_service_account(value: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """Accept a service account key as a dict or JSON text."""
    if value is None or value == "":
        raise AuthError("Missing service account key")
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError) as e:
        raise AuthError(f"Service account key is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise AuthError("Service account key must be a JSON object")
    return parsed


class CredentialBroker:
    """Exchanges a signed JWT assertion for a BigQuery access token"""

    def __init__(
        self,
        service_account: Dict[str, Any],
        scope: Optional[str] = None,
        token_uri: Optional[str] = None,
        lifetime_seconds: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.client_email = service_account.get("client_email")
        self._private_key = service_account.get("private_key")
        self._project_id = service_account.get("project_id")
        self.scope = scope or settings.warehouse_scope
        self.token_uri = token_uri or settings.oauth_token_uri
        self.lifetime_seconds = lifetime_seconds or settings.token_lifetime_seconds
        self._session = session

    @property
    def project_id(self) -> Optional[str]:
        return self._project_id

    def build_assertion(self, now: Optional[int] = None) -> str:
        """Sign {iss, scope, aud, iat, exp} with the service account key."""
        if not self.client_email or not self._private_key:
            raise AuthError("Service account key must contain client_email and private_key")

        try:
            signer = crypt.RSASigner.from_string(self._private_key)
        except (ValueError, TypeError, IndexError) as e:
            raise AuthError(f"Malformed service account private key: {e}") from e

        issued_at = int(now if now is not None else time.time())
        claims = {
            "iss": self.client_email,
            "scope": self.scope,
            "aud": self.token_uri,
            "iat": issued_at,
            "exp": issued_at + self.lifetime_seconds,
        }
        token = jwt.encode(signer, claims, header={"alg": "RS256", "typ": "JWT"})
        return token.decode("utf-8") if isinstance(token, bytes) else token

    async def fetch_access_token(self) -> str:
        """POST the assertion to the token endpoint and return the bearer token."""
        assertion = self.build_assertion()
        form = {"grant_type": JWT_BEARER_GRANT, "assertion": assertion}

        try:
            if self._session is not None:
                status, body = await self._post(self._session, form)
            else:
                timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    status, body = await self._post(session, form)
        except aiohttp.ClientError as e:
            raise AuthError(f"Token exchange failed: {e}") from e

        if status < 200 or status >= 300:
            detail = body.get("error_description") or body.get("error") or body
            raise AuthError(f"Token endpoint returned {status}: {detail}")

        access_token = body.get("access_token")
        if not access_token:
            raise AuthError(f"Token response did not include an access_token: {body}")

        log.info(f"Obtained warehouse access token for {self.client_email}")
        return access_token

    async def _post(self, session, form: Dict[str, str]):
        async with session.post(
            self.token_uri,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {"error": (await response.text())[:500]}
            return response.status, body if isinstance(body, dict) else {"error": body}
