from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from studyauth.logging import get_logger
from studyauth.storage.errors import ConstraintViolation, StorageUnavailable
from studyauth.storage.models import (
    OTPChallenge,
    OTPOutcome,
    RevokedTokenEntry,
    Role,
    Session,
    User,
    UserRevocation,
    utcnow,
)


class MemoryStore:
    """In-process credential store for single-instance deployments and tests.

    All state sits behind one ``RLock`` and is written to
    ``<fs_root>/state/memory_store.json`` after every mutation so revocations
    and pending challenges survive a restart.
    """

    def __init__(self, fs_root: str = "/tmp/studyauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.revoked_tokens: Dict[str, RevokedTokenEntry] = {}
        self.user_revocations: Dict[str, UserRevocation] = {}
        self.otp_challenges: Dict[tuple[str, str], OTPChallenge] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def _check_unique(
        self,
        *,
        username: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and existing.username == username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if phone and existing.phone == phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: str = Role.STUDENT.value,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            self._check_unique(username=username, email=email, phone=phone)
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                phone=phone,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
                email_verified_at=now if email_verified else None,
                created_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.phone == phone), None)

    def find_user_by_email_or_username(
        self, *, email: Optional[str] = None, username: Optional[str] = None
    ) -> Optional[User]:
        if email:
            return self.get_user_by_email(email)
        if username:
            return self.get_user_by_username(username)
        return None

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def update_user_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, password_hash=password_hash)

    def mark_email_verified(self, user_id: str, *, activate: bool = False) -> Optional[User]:
        changes = {"email_verified": True, "email_verified_at": utcnow()}
        if activate:
            changes["is_active"] = True
        return self._update_user(user_id, **changes)

    def update_last_login(self, user_id: str, at: datetime) -> None:
        self._update_user(user_id, last_login_at=at)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    # sessions
    def create_session(
        self,
        user_id: str,
        access_token_id: str,
        expires_at: datetime,
        *,
        refresh_token_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                access_token_id,
                expires_at,
                refresh_token_id=refresh_token_id,
                device_info=device_info,
                ip_addr=ip_addr,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def find_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if token_id in s.token_ids()), None
            )

    def list_user_sessions(self, user_id: str, *, now: Optional[datetime] = None) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.expires_at > now
            ]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None):
                self._persist_state()

    def delete_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            removed = [s for s in self.sessions.values() if s.user_id == user_id]
            for sess in removed:
                self.sessions.pop(sess.id, None)
            if removed:
                self._persist_state()
            return removed

    # revocation
    def revoke_token(
        self, token_id: str, expires_at: datetime, *, user_id: Optional[str] = None
    ) -> bool:
        """Add ``token_id`` to the revocation set; False when it was already there."""
        with self._data_lock:
            existing = self.revoked_tokens.get(token_id)
            if existing and existing.expires_at > utcnow():
                return False
            self.revoked_tokens[token_id] = RevokedTokenEntry(
                token_id=token_id,
                revoked_at=utcnow(),
                expires_at=expires_at,
                user_id=user_id,
            )
            self._persist_state()
            return True

    def is_token_revoked(self, token_id: str, *, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._data_lock:
            entry = self.revoked_tokens.get(token_id)
            return bool(entry and entry.expires_at > now)

    def set_user_revocation(
        self, user_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None:
        with self._data_lock:
            current = self.user_revocations.get(user_id)
            if current and current.revoked_before >= revoked_before:
                return
            self.user_revocations[user_id] = UserRevocation(
                user_id=user_id, revoked_before=revoked_before, expires_at=expires_at
            )
            self._persist_state()

    def get_user_revocation(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        now = now or utcnow()
        with self._data_lock:
            entry = self.user_revocations.get(user_id)
            if not entry or entry.expires_at <= now:
                return None
            return entry.revoked_before

    # one-time passcodes
    def put_otp_challenge(self, challenge: OTPChallenge) -> None:
        """Store ``challenge``, replacing any earlier one for the same destination and purpose."""
        with self._data_lock:
            self.otp_challenges[(challenge.destination, challenge.purpose)] = challenge
            self._persist_state()

    def get_otp_challenge(self, destination: str, purpose: str) -> Optional[OTPChallenge]:
        with self._data_lock:
            challenge = self.otp_challenges.get((destination, purpose))
            return copy.copy(challenge) if challenge else None

    def check_otp_challenge(
        self,
        destination: str,
        purpose: str,
        code_hash: str,
        *,
        now: Optional[datetime] = None,
        challenge_id: Optional[str] = None,
    ) -> tuple[OTPOutcome, Optional[OTPChallenge]]:
        now = now or utcnow()
        with self._data_lock:
            challenge = self.otp_challenges.get((destination, purpose))
            if not challenge:
                return OTPOutcome.NOT_FOUND, None
            before = (challenge.attempt_count, challenge.consumed)
            outcome = challenge.evaluate(code_hash, now=now, challenge_id=challenge_id)
            if (challenge.attempt_count, challenge.consumed) != before:
                self._persist_state()
            return outcome, copy.copy(challenge)

    def purge_expired(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._data_lock:
            expired_sessions = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in expired_sessions:
                self.sessions.pop(sid, None)
            expired_tokens = [
                tid for tid, e in self.revoked_tokens.items() if e.expires_at <= now
            ]
            for tid in expired_tokens:
                self.revoked_tokens.pop(tid, None)
            expired_marks = [
                uid for uid, e in self.user_revocations.items() if e.expires_at <= now
            ]
            for uid in expired_marks:
                self.user_revocations.pop(uid, None)
            expired_otps = [
                key for key, c in self.otp_challenges.items() if c.expires_at <= now
            ]
            for key in expired_otps:
                self.otp_challenges.pop(key, None)
            counts = {
                "sessions": len(expired_sessions),
                "revoked_tokens": len(expired_tokens),
                "user_revocations": len(expired_marks),
                "otp_challenges": len(expired_otps),
            }
            if any(counts.values()):
                self._persist_state()
            return counts

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "revoked_tokens": [
                {
                    "token_id": e.token_id,
                    "user_id": e.user_id,
                    "revoked_at": self._serialize_datetime(e.revoked_at),
                    "expires_at": self._serialize_datetime(e.expires_at),
                }
                for e in self.revoked_tokens.values()
            ],
            "user_revocations": [
                {
                    "user_id": e.user_id,
                    "revoked_before": self._serialize_datetime(e.revoked_before),
                    "expires_at": self._serialize_datetime(e.expires_at),
                }
                for e in self.user_revocations.values()
            ],
            "otp_challenges": [
                self._serialize_challenge(c) for c in self.otp_challenges.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.revoked_tokens = {
            e["token_id"]: RevokedTokenEntry(
                token_id=e["token_id"],
                user_id=e.get("user_id"),
                revoked_at=self._deserialize_datetime(e["revoked_at"]),
                expires_at=self._deserialize_datetime(e["expires_at"]),
            )
            for e in data.get("revoked_tokens", [])
        }
        self.user_revocations = {
            e["user_id"]: UserRevocation(
                user_id=e["user_id"],
                revoked_before=self._deserialize_datetime(e["revoked_before"]),
                expires_at=self._deserialize_datetime(e["expires_at"]),
            )
            for e in data.get("user_revocations", [])
        }
        self.otp_challenges = {}
        for raw in data.get("otp_challenges", []):
            challenge = self._deserialize_challenge(raw)
            self.otp_challenges[(challenge.destination, challenge.purpose)] = challenge
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            revoked_tokens=len(self.revoked_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "phone": user.phone,
            "password_hash": user.password_hash,
            "role": user.role,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data.get("email"),
            phone=data.get("phone"),
            password_hash=data.get("password_hash"),
            role=data.get("role", Role.STUDENT.value),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_token_id": session.access_token_id,
            "refresh_token_id": session.refresh_token_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "device_info": session.device_info,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            access_token_id=data["access_token_id"],
            refresh_token_id=data.get("refresh_token_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_info=data.get("device_info"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_challenge(self, challenge: OTPChallenge) -> dict:
        return {
            "id": challenge.id,
            "channel": challenge.channel,
            "destination": challenge.destination,
            "purpose": challenge.purpose,
            "code_hash": challenge.code_hash,
            "created_at": self._serialize_datetime(challenge.created_at),
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "attempt_count": challenge.attempt_count,
            "max_attempts": challenge.max_attempts,
            "consumed": challenge.consumed,
            "consumed_at": self._serialize_datetime(challenge.consumed_at),
        }

    def _deserialize_challenge(self, data: dict) -> OTPChallenge:
        return OTPChallenge(
            id=data["id"],
            channel=data["channel"],
            destination=data["destination"],
            purpose=data["purpose"],
            code_hash=data["code_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempt_count=data.get("attempt_count", 0),
            max_attempts=data.get("max_attempts", 5),
            consumed=data.get("consumed", False),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )
