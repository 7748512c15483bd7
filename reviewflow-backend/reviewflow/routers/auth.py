import logging
import re
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from reviewflow.core.api_docs import error_responses
from reviewflow.core.config import settings
from reviewflow.core.deps import get_db
from reviewflow.core.id_utils import generate_short_token
from reviewflow.core.observability import log_event
from reviewflow.core.rate_limit import LoginRateLimiter, client_ip
from reviewflow.core.security import create_access_token, hash_password, verify_password
from reviewflow.core.security_current import BusinessAccess, get_current_business_access, resolve_membership
from reviewflow.core.time_utils import utcnow
from reviewflow.models.account import BusinessMembership, User
from reviewflow.models.business import Business
from reviewflow.schemas.auth import LoginIn, RegisterIn, TokenOut, UserProfileOut

logger = logging.getLogger("reviewflow.auth")

router = APIRouter(prefix="/auth", tags=["auth"])
TOKEN_RESPONSE = {
    200: {
        "description": "Bearer token scoped to the caller's business",
        "content": {"application/json": {"example": {"access_token": "eyJhbGciOi...", "token_type": "bearer"}}},
    }
}

login_rate_limiter = LoginRateLimiter(
    max_attempts=settings.auth_rate_limit_max_attempts,
    window_seconds=settings.auth_rate_limit_window_seconds,
    lock_seconds=settings.auth_rate_limit_lock_seconds,
)

_USERNAME_UNSAFE = re.compile(r"[^a-z0-9_]+")


def _username_base(seed: str) -> str:
    base = _USERNAME_UNSAFE.sub("_", seed.strip().lower())
    base = re.sub(r"_{2,}", "_", base).strip("_")
    return base[:30] or "user"


def _username_taken(db: Session, username: str) -> bool:
    stmt = select(User.id).where(func.lower(User.username) == username.lower())
    return db.execute(stmt).first() is not None


def _pick_username(db: Session, *, requested: str | None, email: str) -> str:
    base = _username_base(requested or email.split("@")[0])
    candidate = base
    while _username_taken(db, candidate):
        candidate = f"{base[:22]}_{generate_short_token(6)}"
    return candidate


def _open_business(db: Session, *, owner: User, name: str) -> Business:
    """Creates the business with default review routing and makes ``owner`` its owner."""
    business = Business(
        id=str(uuid.uuid4()),
        owner_user_id=owner.id,
        name=name,
        public_rating_threshold=settings.public_rating_threshold_default,
    )
    db.add(business)
    db.flush()
    db.add(BusinessMembership(id=str(uuid.uuid4()), business_id=business.id, user_id=owner.id, role="owner"))
    return business


def _find_login_user(db: Session, identifier: str) -> User | None:
    lookup = identifier.strip().lower()
    return db.execute(
        select(User).where(or_(func.lower(User.email) == lookup, func.lower(User.username) == lookup))
    ).scalar_one_or_none()


def _login(db: Session, identifier: str, password: str, ip: str) -> TokenOut:
    key = f"{identifier.strip().lower()}:{ip}"
    retry_after = login_rate_limiter.check(key)
    if retry_after > 0:
        log_event(logger, "auth.login_locked", level=logging.WARNING, ip=ip, retry_after=retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed attempts. Try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    user = _find_login_user(db, identifier)
    if user is None or not user.is_active or not verify_password(password, user.hashed_password):
        login_rate_limiter.register_failure(key)
        log_event(logger, "auth.login_failed", level=logging.WARNING, ip=ip)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    login_rate_limiter.register_success(key)
    resolved = resolve_membership(db, user.id)
    business_id = resolved[1].id if resolved else None
    user.last_login_at = utcnow()
    db.commit()
    log_event(logger, "auth.login", user_id=user.id, business_id=business_id)
    return TokenOut(access_token=create_access_token(user.id, business_id=business_id))


@router.post(
    "/register",
    response_model=TokenOut,
    summary="Register an owner and their business",
    responses={**TOKEN_RESPONSE, **error_responses(400, 422, 500)},
)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    email = payload.email.lower()
    if db.execute(select(User.id).where(func.lower(User.email) == email)).first() is not None:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=email,
        username=_pick_username(db, requested=payload.username, email=email),
        full_name=payload.full_name,
        hashed_password=hash_password(payload.password),
    )
    db.add(user)
    db.flush()

    business = _open_business(db, owner=user, name=payload.business_name)
    db.commit()
    log_event(logger, "auth.register", user_id=user.id, business_id=business.id)
    return TokenOut(access_token=create_access_token(user.id, business_id=business.id))


@router.post(
    "/login",
    response_model=TokenOut,
    summary="Login with email or username",
    responses={**TOKEN_RESPONSE, **error_responses(401, 422, 429, 500)},
)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    return _login(db, payload.identifier, payload.password, client_ip(request))


@router.post(
    "/token",
    response_model=TokenOut,
    summary="OAuth2 password form login",
    description="Same as `/auth/login`; the `username` field accepts an email or username.",
    responses={**TOKEN_RESPONSE, **error_responses(401, 422, 429, 500)},
)
def login_form(
    request: Request,
    db: Session = Depends(get_db),
    form_data: OAuth2PasswordRequestForm = Depends(),
):
    return _login(db, form_data.username, form_data.password, client_ip(request))


@router.get(
    "/me",
    response_model=UserProfileOut,
    summary="Current user with their business and role",
    responses=error_responses(401, 404, 500),
)
def get_my_profile(access: BusinessAccess = Depends(get_current_business_access)):
    user = access.user
    return UserProfileOut(
        id=user.id,
        email=user.email,
        username=user.username,
        full_name=user.full_name,
        business_id=access.business.id,
        business_name=access.business.name,
        role=access.role,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )
