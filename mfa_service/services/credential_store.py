"""
Credential Store - persistence for MFA method rows and backup code hashes

The MFA service never caches method state; every decision is made against
this store. Operations that consume a code are conditional writes whose
affected row count decides the outcome, so a code cannot be accepted twice
by concurrent requests.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mfa_service.core.exceptions import CredentialStoreError
from mfa_service.models.mfa import MfaBackupCode, MfaMethod, MfaMethodState, MfaMethodType

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Abstract credential store consumed by MfaService"""

    @abstractmethod
    def get(self, user_id: str, method_type: MfaMethodType) -> Optional[MfaMethod]:
        """Get the method row for (user, method type), or None"""

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[MfaMethod]:
        """All method rows for a user, newest first"""

    @abstractmethod
    def count_for_user(self, user_id: str) -> int:
        """Number of method rows for a user"""

    @abstractmethod
    def upsert(
        self,
        user_id: str,
        method_type: MfaMethodType,
        secret_or_code: Optional[str],
        destination: Optional[str] = None,
        state: Optional[MfaMethodState] = None,
        code_issued_at: Optional[datetime] = None,
        reset_last_used: bool = False
    ) -> MfaMethod:
        """Create or overwrite the (user, method type) row"""

    @abstractmethod
    def replace_totp_enrollment(self, user_id: str, secret: str, code_hashes: Iterable[str]) -> Optional[MfaMethod]:
        """
        Overwrite the TOTP row as pending with a new secret and swap in new backup codes, atomically

        Returns None and changes nothing if the user already has an active TOTP method.
        """

    @abstractmethod
    def mark_verified(self, user_id: str, method_type: MfaMethodType, used_at: datetime) -> bool:
        """Set last_used_at and promote the row to active"""

    @abstractmethod
    def consume_code(
        self,
        user_id: str,
        method_type: MfaMethodType,
        expected_code: str,
        used_at: datetime
    ) -> bool:
        """Clear the stored code iff it still equals expected_code; True if cleared"""

    @abstractmethod
    def clear_code(self, user_id: str, method_type: MfaMethodType, expected_code: str) -> bool:
        """Clear the stored code iff it still equals expected_code, without marking use"""

    @abstractmethod
    def delete_one(self, user_id: str, method_type: MfaMethodType, include_backup_codes: bool = False) -> bool:
        """Delete a single method row; True if a row was deleted"""

    @abstractmethod
    def delete_all(self, user_id: str) -> int:
        """Delete every method row and backup code of a user atomically"""

    @abstractmethod
    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        """Atomically replace the backup code set of a user"""

    @abstractmethod
    def list_backup_code_hashes(self, user_id: str) -> List[str]:
        """Hashes of all redeemable backup codes"""

    @abstractmethod
    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Delete the backup code if present; True if it was redeemable"""

    @abstractmethod
    def clear_expired_codes(self, issued_before: datetime) -> int:
        """Clear SMS/email codes issued before the cutoff; returns rows cleared"""


class SqlAlchemyCredentialStore(CredentialStore):
    """Credential store backed by a SQLAlchemy session"""

    TRANSIENT_METHODS = (MfaMethodType.SMS, MfaMethodType.EMAIL)

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _transaction(self, operation: str):
        """Commit on success, roll back and wrap driver errors on failure"""
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Credential store {operation} failed: {str(e)}")
            raise CredentialStoreError(f"Credential store {operation} failed", operation=operation) from e

    @contextmanager
    def _read(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Credential store {operation} failed: {str(e)}")
            raise CredentialStoreError(f"Credential store {operation} failed", operation=operation) from e

    def get(self, user_id: str, method_type: MfaMethodType) -> Optional[MfaMethod]:
        with self._read("get"):
            # Always read the committed row, never a stale identity-map copy
            return self.db.execute(
                select(MfaMethod)
                .where(MfaMethod.user_id == user_id, MfaMethod.method_type == method_type)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

    def list_for_user(self, user_id: str) -> List[MfaMethod]:
        with self._read("list_for_user"):
            return list(self.db.execute(
                select(MfaMethod)
                .where(MfaMethod.user_id == user_id)
                .order_by(MfaMethod.created_at.desc(), MfaMethod.method_id.desc())
                .execution_options(populate_existing=True)
            ).scalars())

    def count_for_user(self, user_id: str) -> int:
        with self._read("count_for_user"):
            return self.db.execute(
                select(func.count()).select_from(MfaMethod).where(MfaMethod.user_id == user_id)
            ).scalar_one()

    def upsert(
        self,
        user_id: str,
        method_type: MfaMethodType,
        secret_or_code: Optional[str],
        destination: Optional[str] = None,
        state: Optional[MfaMethodState] = None,
        code_issued_at: Optional[datetime] = None,
        reset_last_used: bool = False
    ) -> MfaMethod:
        try:
            return self._upsert_once(user_id, method_type, secret_or_code, destination, state, code_issued_at, reset_last_used)
        except CredentialStoreError as e:
            # Two first-time writers raced on the unique (user, method) key; the
            # row exists now, so the retry takes the update path
            if not isinstance(e.__cause__, IntegrityError):
                raise
            return self._upsert_once(user_id, method_type, secret_or_code, destination, state, code_issued_at, reset_last_used)

    def _upsert_once(
        self,
        user_id: str,
        method_type: MfaMethodType,
        secret_or_code: Optional[str],
        destination: Optional[str],
        state: Optional[MfaMethodState],
        code_issued_at: Optional[datetime],
        reset_last_used: bool
    ) -> MfaMethod:
        with self._transaction("upsert"):
            method = self._apply_upsert(user_id, method_type, secret_or_code, destination, state, code_issued_at, reset_last_used)
        return method

    def _lock_method(self, user_id: str, method_type: MfaMethodType) -> Optional[MfaMethod]:
        return self.db.execute(
            select(MfaMethod)
            .where(MfaMethod.user_id == user_id, MfaMethod.method_type == method_type)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _apply_upsert(
        self,
        user_id: str,
        method_type: MfaMethodType,
        secret_or_code: Optional[str],
        destination: Optional[str],
        state: Optional[MfaMethodState],
        code_issued_at: Optional[datetime],
        reset_last_used: bool
    ) -> MfaMethod:
        method = self._lock_method(user_id, method_type)

        if method is None:
            method = MfaMethod(
                user_id=user_id,
                method_type=method_type,
                state=state or MfaMethodState.PENDING,
                created_at=datetime.utcnow()
            )
            self.db.add(method)
        elif state is not None:
            method.state = state

        method.secret_or_code = secret_or_code
        method.destination = destination
        method.code_issued_at = code_issued_at
        if reset_last_used:
            method.last_used_at = None

        return method

    def replace_totp_enrollment(self, user_id: str, secret: str, code_hashes: Iterable[str]) -> Optional[MfaMethod]:
        with self._transaction("replace_totp_enrollment"):
            existing = self._lock_method(user_id, MfaMethodType.TOTP)
            if existing is not None and existing.state == MfaMethodState.ACTIVE:
                return None

            method = self._apply_upsert(
                user_id,
                MfaMethodType.TOTP,
                secret,
                None,
                MfaMethodState.PENDING,
                None,
                True
            )
            self._apply_replace_backup_codes(user_id, code_hashes)
        return method

    def mark_verified(self, user_id: str, method_type: MfaMethodType, used_at: datetime) -> bool:
        with self._transaction("mark_verified"):
            result = self.db.execute(
                update(MfaMethod)
                .where(MfaMethod.user_id == user_id, MfaMethod.method_type == method_type)
                .values(last_used_at=used_at, state=MfaMethodState.ACTIVE)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def consume_code(
        self,
        user_id: str,
        method_type: MfaMethodType,
        expected_code: str,
        used_at: datetime
    ) -> bool:
        with self._transaction("consume_code"):
            result = self.db.execute(
                update(MfaMethod)
                .where(
                    MfaMethod.user_id == user_id,
                    MfaMethod.method_type == method_type,
                    MfaMethod.secret_or_code == expected_code
                )
                .values(
                    secret_or_code=None,
                    code_issued_at=None,
                    last_used_at=used_at,
                    state=MfaMethodState.ACTIVE
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def clear_code(self, user_id: str, method_type: MfaMethodType, expected_code: str) -> bool:
        with self._transaction("clear_code"):
            result = self.db.execute(
                update(MfaMethod)
                .where(
                    MfaMethod.user_id == user_id,
                    MfaMethod.method_type == method_type,
                    MfaMethod.secret_or_code == expected_code
                )
                .values(secret_or_code=None, code_issued_at=None)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def delete_one(self, user_id: str, method_type: MfaMethodType, include_backup_codes: bool = False) -> bool:
        with self._transaction("delete_one"):
            result = self.db.execute(
                delete(MfaMethod)
                .where(MfaMethod.user_id == user_id, MfaMethod.method_type == method_type)
                .execution_options(synchronize_session=False)
            )
            if include_backup_codes:
                self.db.execute(
                    delete(MfaBackupCode)
                    .where(MfaBackupCode.user_id == user_id)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    def delete_all(self, user_id: str) -> int:
        with self._transaction("delete_all"):
            result = self.db.execute(
                delete(MfaMethod)
                .where(MfaMethod.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                delete(MfaBackupCode)
                .where(MfaBackupCode.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        with self._transaction("replace_backup_codes"):
            self._apply_replace_backup_codes(user_id, code_hashes)

    def _apply_replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        now = datetime.utcnow()
        self.db.execute(
            delete(MfaBackupCode)
            .where(MfaBackupCode.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        self.db.add_all([
            MfaBackupCode(user_id=user_id, code_hash=code_hash, created_at=now)
            for code_hash in code_hashes
        ])

    def list_backup_code_hashes(self, user_id: str) -> List[str]:
        with self._read("list_backup_code_hashes"):
            return list(self.db.execute(
                select(MfaBackupCode.code_hash).where(MfaBackupCode.user_id == user_id)
            ).scalars())

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._transaction("consume_backup_code"):
            result = self.db.execute(
                delete(MfaBackupCode)
                .where(MfaBackupCode.user_id == user_id, MfaBackupCode.code_hash == code_hash)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def clear_expired_codes(self, issued_before: datetime) -> int:
        with self._transaction("clear_expired_codes"):
            result = self.db.execute(
                update(MfaMethod)
                .where(
                    and_(
                        MfaMethod.method_type.in_(self.TRANSIENT_METHODS),
                        MfaMethod.secret_or_code.isnot(None),
                        MfaMethod.code_issued_at < issued_before
                    )
                )
                .values(secret_or_code=None, code_issued_at=None)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount
