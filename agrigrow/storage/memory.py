from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from agrigrow.logging import get_logger
from agrigrow.storage.errors import ConstraintViolation
from agrigrow.storage.models import (
    DEFAULT_ROLE,
    LOCATION_FIELDS,
    MUTABLE_PROFILE_FIELDS,
    Account,
    AccountCredential,
    Location,
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-process account store, optionally mirrored to a JSON state file."""

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, AccountCredential] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self._load_state()

    def verify_connection(self) -> None:
        return None

    def create_account(
        self,
        email: str,
        name: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = DEFAULT_ROLE,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
            )
            self.accounts[account.id] = account
            self.credentials[account.id] = AccountCredential(
                account_id=account.id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return copy.deepcopy(account) if account else None

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(account_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    def update_account(self, account_id: str, changes: Dict[str, Any]) -> Optional[Account]:
        """Apply a partial profile update in one locked step.

        ``location`` is a dict of sub-fields merged into the stored location.
        Keys outside the mutable profile fields are ignored.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for key, value in changes.items():
                if key not in MUTABLE_PROFILE_FIELDS:
                    continue
                if key == "location":
                    location = account.location or Location()
                    for sub_key, sub_value in (value or {}).items():
                        if sub_key in LOCATION_FIELDS:
                            setattr(location, sub_key, sub_value)
                    account.location = None if location.is_empty() else location
                else:
                    setattr(account, key, value)
            self._persist_state()
            return copy.deepcopy(account)

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            self._persist_state()
            return copy.deepcopy(account)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            results = sorted(
                self.accounts.values(), key=lambda a: a.date_joined, reverse=True
            )
            return [copy.deepcopy(a) for a in results[:limit]]

    @staticmethod
    def _serialize_account(account: Account) -> dict:
        data = asdict(account)
        data["date_joined"] = account.date_joined.isoformat()
        return data

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        location = data.get("location")
        return Account(
            id=data["id"],
            email=data["email"],
            name=data["name"],
            role=data.get("role", DEFAULT_ROLE),
            phone=data.get("phone"),
            location=Location(**location) if location else None,
            profile_image=data.get("profile_image"),
            date_joined=datetime.fromisoformat(data["date_joined"]),
        )

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": cred.account_id,
                    "password_hash": cred.password_hash,
                    "password_algo": cred.password_algo,
                    "created_at": cred.created_at.isoformat(),
                }
                for cred in self.credentials.values()
            ],
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state, indent=2))
        tmp_path.replace(self.state_path)

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            c["account_id"]: AccountCredential(
                account_id=c["account_id"],
                password_hash=c["password_hash"],
                password_algo=c["password_algo"],
                created_at=datetime.fromisoformat(c["created_at"]),
            )
            for c in data.get("credentials", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True
