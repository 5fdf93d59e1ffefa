from __future__ import annotations

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from mailshare_admin.logging import get_logger
from mailshare_admin.service.errors import AuthenticationError, InvalidPasswordError
from mailshare_admin.service.sessions import SessionRegistry

logger = get_logger(__name__)


class RevocationService:
    """Step-up revocation: the caller re-enters their password to end any session."""

    def __init__(
        self, store, registry: SessionRegistry, password_hasher: PasswordHasher
    ) -> None:
        self.store = store
        self.registry = registry
        self._pwd_hasher = password_hasher

    def revoke_session(
        self, caller_admin_id: str, target_session_id: str, password: str
    ) -> bool:
        """Deactivate ``target_session_id`` once ``password`` checks out.

        Returns whether the target existed. Unknown or already inactive
        targets still count as success.
        """
        admin = self.store.get_admin(caller_admin_id)
        if admin is None:
            raise AuthenticationError("administrator not found")
        if not self._password_matches(admin.password_hash, password):
            logger.warning(
                "session_revoke_password_rejected",
                admin_id=caller_admin_id,
                target_session_id=target_session_id,
            )
            raise InvalidPasswordError("invalid password")
        existed = self.registry.deactivate(target_session_id)
        logger.info(
            "session_revoked",
            admin_id=caller_admin_id,
            target_session_id=target_session_id,
            existed=existed,
        )
        return existed

    def _password_matches(self, password_hash, password: str) -> bool:
        if not password_hash or not password:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
