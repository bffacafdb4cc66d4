from __future__ import annotations

import copy
import json
import os
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from wso2auth.logging import get_logger
from wso2auth.storage.errors import ConstraintViolation
from wso2auth.storage.models import ExternalIdentityLink, User


class MemoryStore:
    """Local user store kept in memory and mirrored to a JSON file.

    Holds the local accounts and their external identity links. All access
    goes through one re-entrant lock; ``transaction()`` makes a group of
    writes all-or-nothing.
    """

    def __init__(self, fs_root: str = "/tmp/wso2auth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.links: List[ExternalIdentityLink] = []
        # RLock so transaction() can wrap calls that lock again
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if self._load_state():
            self.logger.info(
                "user_store_loaded", users=len(self.users), links=len(self.links)
            )

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "user_store.json"

    # transactions
    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Apply every write in the block or none of them."""
        with self._data_lock:
            snapshot = (copy.deepcopy(self.users), copy.deepcopy(self.links))
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self.users, self.links = snapshot
                self.logger.warning("user_store_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1
            if self._tx_depth == 0:
                self._persist_state()

    # users
    def create_user(
        self,
        name: str,
        email: Optional[str] = None,
        *,
        roles: Optional[List[str]] = None,
        profile: Optional[Dict] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if self.get_user_by_name(name) is not None:
                raise ConstraintViolation("username already exists", {"field": "name"})
            user = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                roles=list(roles or []),
                profile=dict(profile or {}),
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def save_user(self, user: User) -> User:
        with self._data_lock:
            clash = self.get_user_by_name(user.name)
            if clash is not None and clash.id != user.id:
                raise ConstraintViolation("username already exists", {"field": "name"})
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_name(self, name: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.name == name), None)

    def find_users_by_email(self, email: str) -> List[User]:
        with self._data_lock:
            return [u for u in self.users.values() if u.email and u.email == email]

    # external identities
    def link_external_identity(
        self, user_id: str, provider: str, authname: str
    ) -> ExternalIdentityLink:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.links:
                if existing.provider == provider and existing.authname == authname:
                    if existing.user_id == user_id:
                        return existing
                    raise ConstraintViolation(
                        "external identity already linked",
                        {"provider": provider, "user_id": existing.user_id},
                    )
            link = ExternalIdentityLink(provider=provider, authname=authname, user_id=user_id)
            self.links.append(link)
            self._persist_state()
            return link

    def get_user_by_external_id(self, provider: str, authname: str) -> Optional[User]:
        with self._data_lock:
            for link in self.links:
                if link.provider == provider and link.authname == authname:
                    return self.users.get(link.user_id)
            return None

    def ping(self) -> bool:
        return os.access(self.fs_root, os.W_OK)

    # persistence
    def _persist_state(self) -> None:
        if self._tx_depth:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "links": [self._serialize_link(link) for link in self.links],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist user store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.links = [self._deserialize_link(link) for link in data.get("links", [])]
        return True

    @staticmethod
    def _serialize_datetime(value: datetime) -> str:
        return value.isoformat()

    @staticmethod
    def _deserialize_datetime(value: str) -> datetime:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "roles": user.roles,
            "profile": user.profile,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            name=data["name"],
            email=data.get("email"),
            roles=list(data.get("roles") or []),
            profile=dict(data.get("profile") or {}),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_link(self, link: ExternalIdentityLink) -> dict:
        return {
            "provider": link.provider,
            "authname": link.authname,
            "user_id": link.user_id,
            "created_at": self._serialize_datetime(link.created_at),
        }

    def _deserialize_link(self, data: dict) -> ExternalIdentityLink:
        return ExternalIdentityLink(
            provider=data["provider"],
            authname=data["authname"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )
