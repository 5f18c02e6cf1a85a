# auth.py
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set

from jose import JWTError, jwt
from passlib.context import CryptContext

from courier_service.errors import AuthError
from courier_service.models import auth_users, profiles
from courier_service.schemas import Session
from courier_service.store import RelationalStore

logger = logging.getLogger("courier-service.auth")

# ---------------------------------------------------------
# Password Hashing
# ---------------------------------------------------------
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
MAX_BCRYPT_BYTES = 72  # bcrypt limit


def hash_password(password: str) -> str:
    """Hash password safely & check 72-byte bcrypt rule."""
    if len(password.encode("utf-8")) > MAX_BCRYPT_BYTES:
        raise AuthError(f"Password too long. Max {MAX_BCRYPT_BYTES} bytes allowed.")
    return pwd_context.hash(password)


def verify_password(raw: str, hashed: str) -> bool:
    b = raw.encode("utf-8")
    if len(b) > MAX_BCRYPT_BYTES:
        return False
    return pwd_context.verify(raw, hashed)


class AuthProvider:
    """sign_up / sign_in / sign_out / get_session over auth_users + JWT."""

    def __init__(self, store: RelationalStore, secret: str, algorithm: str = "HS256", exp_minutes: int = 60):
        self.store = store
        self.secret = secret
        self.algorithm = algorithm
        self.exp_minutes = exp_minutes
        self._revoked: Set[str] = set()

    # -------------------------
    # JWT
    # -------------------------
    def create_token(self, user_id: str, role: str) -> Session:
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=self.exp_minutes)
        payload = {
            "sub": user_id,
            "role": role,
            "jti": str(uuid.uuid4()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self.secret, algorithm=self.algorithm)
        return Session(user_id=user_id, role=role, access_token=token, expires_at=expires_at)

    def decode_token(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            return None
        if payload.get("jti") in self._revoked:
            return None
        return payload

    # -------------------------
    # Operations
    # -------------------------
    async def sign_up(self, email: str, password: str, profile: Optional[Dict[str, Any]] = None, role: str = "driver") -> str:
        email = email.strip().lower()
        existing = await self.store.select_one(auth_users, auth_users.c.email == email)
        if existing:
            raise AuthError("Email already registered")

        user_id = str(uuid.uuid4())
        await self.store.insert(auth_users, {
            "id": user_id,
            "email": email,
            "password_hash": hash_password(password),
            "role": role,
        })

        # profile row doubles as the driver's presence record
        profile = profile or {}
        await self.store.insert(profiles, {
            "id": user_id,
            "name": profile.get("name"),
            "phone": profile.get("phone"),
            "cpf": profile.get("cpf"),
            "status": "pending",
            "is_online": False,
        })
        logger.info(f"[Auth] Signed up {email} as {role} ({user_id})")
        return user_id

    async def sign_in(self, email: str, password: str) -> Session:
        user = await self.store.select_one(auth_users, auth_users.c.email == email.strip().lower())
        if not user or not verify_password(password, user["password_hash"]):
            raise AuthError("Invalid credentials")
        logger.info(f"[Auth] Signed in {user['id']}")
        return self.create_token(user["id"], user["role"])

    def sign_out(self, token: str) -> None:
        payload = self.decode_token(token)
        if payload and payload.get("jti"):
            self._revoked.add(payload["jti"])
            logger.info(f"[Auth] Signed out {payload.get('sub')}")

    def get_session(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        payload = self.decode_token(token)
        if not payload:
            return None
        return Session(
            user_id=payload["sub"],
            role=payload.get("role") or "driver",
            access_token=token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
