import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Generator, Optional

from b2sdk.v2 import InMemoryAccountInfo, B2Api
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from quotagate.config import Settings, get_settings

logger = logging.getLogger(__name__)

JWT_EXPIRATION_HOURS = 24


def make_engine(database_url: str):
    """Create an engine, relaxing SQLite's same-thread check"""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


# Database setup
engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get a database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache()
def get_b2():
    """Get Backblaze B2 client"""
    settings = get_settings()
    info = InMemoryAccountInfo()
    b2_api = B2Api(info)

    if not settings.b2_key_id or not settings.b2_key:
        logger.warning("B2 credentials not configured. Download links will not work.")
        return b2_api

    try:
        b2_api.authorize_account("production", settings.b2_key_id, settings.b2_key)
    except Exception as e:
        # Unauthorized client - download URL generation fails per request
        logger.error(f"Error authorizing B2 account: {e}")
    return b2_api


# JWT functions. Tokens are issued by the identity provider; create_access_token
# exists for local development and tests.
def create_access_token(user_id: str, settings: Settings, expires_delta: Optional[timedelta] = None):
    """Create a JWT access token"""
    if expires_delta is None:
        expires_delta = timedelta(hours=JWT_EXPIRATION_HOURS)

    to_encode = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings):
    """Decode a JWT token"""
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
