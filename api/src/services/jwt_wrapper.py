"""
JWT issuance and inspection.

Tokens identify a global identifier (the uniqueIdentifier of a
globalIdentifier row) and carry its groupings and super user flag, so
endpoints can make access decisions without a database round trip:

    {
        "globalIdentifier": "8a5b...",
        "globalIdentifierGroupings": ["administrators"],
        "isSuperUser": false,
        "iss": "<app name>",
        "iat": 1700000000,
        "exp": 1700003600
    }
"""

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from jose import JWTError, jwt

logger = structlog.get_logger(__name__)

ExpiresIn = Union[int, float, timedelta, None]


class JwtWrapper:
    """Issues and verifies application JWTs with python-jose."""

    def __init__(
        self,
        secret: str,
        app_name: str,
        algorithm: str = "HS256",
        identifier_service: Optional[Any] = None,
    ):
        """
        Initialize the wrapper.

        Args:
            secret: Signing secret
            app_name: Used as the token issuer
            algorithm: JWT signing algorithm
            identifier_service: Optional object providing
                get_global_identifier() and
                get_global_identifier_groupings_readable(), used to fill in
                groupings and the super user flag when issuing tokens
        """
        self.secret = secret
        self.app_name = app_name
        self.algorithm = algorithm
        self.identifier_service = identifier_service
        self.last_error: Optional[str] = None

    async def issue_jwt(
        self,
        global_identifier: str,
        expires_in: ExpiresIn = None,
        groupings: Optional[List[str]] = None,
        is_super_user: Optional[bool] = None,
    ) -> str:
        """
        Create a signed token for a global identifier.

        Args:
            global_identifier: uniqueIdentifier of the global identifier
            expires_in: Seconds or timedelta until expiry; no expiry if None
            groupings: Grouping names; looked up when None and an
                identifier service is configured
            is_super_user: Super user flag; looked up when None and an
                identifier service is configured

        Returns:
            Encoded JWT
        """
        if self.identifier_service is not None:
            if groupings is None:
                groupings = await self.identifier_service.get_global_identifier_groupings_readable(
                    global_identifier
                )
            if is_super_user is None:
                identifier = await self.identifier_service.get_global_identifier(global_identifier)
                is_super_user = bool(identifier and identifier.get("isSuperUser") in (True, 1))

        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "globalIdentifier": global_identifier,
            "globalIdentifierGroupings": list(groupings or []),
            "isSuperUser": bool(is_super_user),
            "iss": self.app_name,
            "iat": int(now.timestamp()),
        }

        if expires_in is not None:
            if not isinstance(expires_in, timedelta):
                expires_in = timedelta(seconds=expires_in)
            payload["exp"] = int((now + expires_in).timestamp())

        token = jwt.encode(payload, self.secret, algorithm=self.algorithm)
        logger.info(
            "jwt_issued",
            global_identifier=global_identifier,
            expires_in=expires_in.total_seconds() if expires_in is not None else None,
        )
        return token

    def _decode(self, token: str) -> Dict[str, Any]:
        return jwt.decode(token, self.secret, algorithms=[self.algorithm], issuer=self.app_name)

    def verify_jwt(self, token: Optional[str]) -> bool:
        """
        Check the signature, expiry and issuer of a token.

        The reason for a failed check is kept in last_error.
        """
        self.last_error = None
        if not token:
            self.last_error = "No token provided"
            return False

        try:
            self._decode(token)
        except JWTError as e:
            self.last_error = str(e)
            logger.warning("jwt_verify_failed", error=str(e))
            return False

        return True

    def get_jwt_payload(self, token: Optional[str]) -> Dict[str, Any]:
        """Decoded payload of a valid token, or {} if it is invalid."""
        if not self.verify_jwt(token):
            return {}
        return self._decode(token)

    def get_jwt_global_identifier(self, token: Optional[str]) -> Optional[str]:
        return self.get_jwt_payload(token).get("globalIdentifier")

    def get_jwt_global_identifier_groupings(self, token: Optional[str]) -> List[str]:
        groupings = self.get_jwt_payload(token).get("globalIdentifierGroupings")
        return list(groupings) if isinstance(groupings, list) else []

    def is_super_user(self, token: Optional[str]) -> bool:
        value = self.get_jwt_payload(token).get("isSuperUser")
        return value is True or (value == 1 and not isinstance(value, bool))
