"""
Address book.

Every user owns an ordered list of delivery addresses, exactly one of which
is the default whenever the list is non-empty. Mutations that touch more
than one row run as one transaction that first locks all of the user's rows,
and the addresses table carries a partial unique index that allows a single
``is_default`` row per user, so two overlapping sessions can never both
commit a default. The losing session hits the constraint and is retried by
``run_in_transaction`` against the committed state.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .database import run_in_transaction, run_read
from .errors import AddressNotFoundError, ValidationError
from .schemas import Address, AddressFields

logger = logging.getLogger(__name__)

# Fields ``update`` may change; identity and the default flag are not among them.
MUTABLE_FIELDS = frozenset(AddressFields.model_fields)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _lock_user_rows(session: Session, user_id: str) -> List[models.Address]:
    """Load the user's addresses in creation order, locking them for this transaction."""
    stmt = (
        select(models.Address)
        .where(models.Address.user_id == user_id)
        .order_by(models.Address.id)
        .with_for_update()
    )
    return list(session.scalars(stmt))


def _find(rows: List[models.Address], user_id: str, address_id: str) -> models.Address:
    for row in rows:
        if row.address_id == address_id:
            return row
    raise AddressNotFoundError(user_id, address_id)


def _clear_defaults(session: Session, rows: List[models.Address], keep: Optional[models.Address] = None) -> None:
    changed = False
    for row in rows:
        if row is not keep and row.is_default:
            row.is_default = False
            changed = True
    if changed:
        # The old default must be cleared in the store before a new one is set.
        session.flush()


class AddressBook:
    """CRUD over a user's delivery addresses holding the single-default invariant."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list(self, user_id: str) -> List[Address]:
        def op(session: Session) -> List[Address]:
            stmt = (
                select(models.Address)
                .where(models.Address.user_id == user_id)
                .order_by(models.Address.id)
            )
            return [Address.model_validate(row) for row in session.scalars(stmt)]

        return run_read(self._session_factory, op, "list_addresses")

    def get(self, user_id: str, address_id: str) -> Address:
        for address in self.list(user_id):
            if address.address_id == address_id:
                return address
        raise AddressNotFoundError(user_id, address_id)

    def get_default(self, user_id: str) -> Optional[Address]:
        for address in self.list(user_id):
            if address.is_default:
                return address
        return None

    def add(self, user_id: str, fields: AddressFields, is_default_requested: bool = False) -> Address:
        """
        Create an address. The user's first address is always the default;
        requesting default for a later one moves the default to it.
        """
        if not user_id:
            raise ValidationError("userId required", "userId")
        values = fields.model_dump(mode="json", include=set(MUTABLE_FIELDS))

        def op(session: Session) -> Address:
            rows = _lock_user_rows(session, user_id)
            make_default = not rows or is_default_requested
            if make_default:
                _clear_defaults(session, rows)
            row = models.Address(
                user_id=user_id,
                address_id=str(uuid.uuid4()),
                is_default=make_default,
                created_at=_utc_now(),
                **values,
            )
            session.add(row)
            session.flush()
            return Address.model_validate(row)

        address = run_in_transaction(self._session_factory, op, "add_address")
        logger.info("Added address %s for user %s (default=%s)", address.address_id, user_id, address.is_default)
        return address

    def update(self, user_id: str, address_id: str, changes: Dict[str, Any]) -> Address:
        """Merge contact/location/type fields. Never touches ``is_default``."""
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields cannot be updated: {', '.join(sorted(unknown))}")

        def op(session: Session) -> Address:
            row = _find(_lock_user_rows(session, user_id), user_id, address_id)
            for key, value in changes.items():
                setattr(row, key, value)
            session.flush()
            return Address.model_validate(row)

        return run_in_transaction(self._session_factory, op, "update_address")

    def remove(self, user_id: str, address_id: str) -> Optional[str]:
        """
        Delete an address. If it was the default, the earliest remaining
        address becomes the default in the same transaction.

        Returns:
            The id of the promoted address, or None if no promotion happened.
        """
        def op(session: Session) -> Optional[str]:
            rows = _lock_user_rows(session, user_id)
            target = _find(rows, user_id, address_id)
            was_default = target.is_default
            session.delete(target)
            session.flush()

            remaining = [row for row in rows if row is not target]
            if was_default and remaining:
                remaining[0].is_default = True
                session.flush()
                return remaining[0].address_id
            return None

        promoted = run_in_transaction(self._session_factory, op, "remove_address")
        if promoted:
            logger.info("Promoted address %s to default for user %s", promoted, user_id)
        return promoted

    def set_default(self, user_id: str, address_id: str) -> Address:
        def op(session: Session) -> Address:
            rows = _lock_user_rows(session, user_id)
            target = _find(rows, user_id, address_id)
            _clear_defaults(session, rows, keep=target)
            if not target.is_default:
                target.is_default = True
                session.flush()
            return Address.model_validate(target)

        return run_in_transaction(self._session_factory, op, "set_default_address")
