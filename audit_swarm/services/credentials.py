import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit_swarm.config import get_settings
from audit_swarm.models.snapshot import CredentialAccount
from audit_swarm.services.exceptions import DependencyUnavailable

logger = logging.getLogger("credentials")
settings = get_settings()


class CredentialStore:
    """
    Repository-origin tokens, encrypted at rest with Fernet.

    Snapshots only ever hold the account id (`account_ref`); the token is
    decrypted once per job run and handed to the content cache's client.
    """

    def __init__(self, key: Optional[str] = None):
        key = key if key is not None else settings.CREDENTIAL_ENCRYPTION_KEY
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key) if key else None

    def _require(self) -> Fernet:
        if self._fernet is None:
            raise DependencyUnavailable("credentials", "CREDENTIAL_ENCRYPTION_KEY is not configured")
        return self._fernet

    async def store(self, db: AsyncSession, user_id: str, token: str, login: Optional[str] = None) -> CredentialAccount:
        account = CredentialAccount(
            user_id=user_id,
            login=login,
            encrypted_token=self._require().encrypt(token.encode()).decode(),
        )
        db.add(account)
        await db.commit()
        await db.refresh(account)
        logger.info(f"[Credentials] Stored credential {account.id} for user {user_id}")
        return account

    async def resolve(self, db: AsyncSession, account_ref: str, user_id: Optional[str] = None) -> Optional[str]:
        """Decrypted token for `account_ref`, or None if missing, foreign or undecryptable."""
        stmt = select(CredentialAccount).where(CredentialAccount.id == account_ref)
        if user_id is not None:
            stmt = stmt.where(CredentialAccount.user_id == user_id)
        account = (await db.execute(stmt)).scalar_one_or_none()
        if account is None:
            logger.warning(f"[Credentials] No credential {account_ref} for user {user_id}")
            return None
        try:
            return self._require().decrypt(account.encrypted_token.encode()).decode()
        except InvalidToken:
            logger.error(f"[Credentials] Credential {account_ref} could not be decrypted")
            return None
