from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import case, select
from sqlalchemy.orm import Session

from reviewflow.core.deps import get_db
from reviewflow.core.security import AccessClaims, TokenValidationError, decode_access_token
from reviewflow.models.account import MEMBERSHIP_ROLES, BusinessMembership, User
from reviewflow.models.business import Business

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

# Lower rank is more privileged.
ROLE_RANKS = {role: rank for rank, role in enumerate(MEMBERSHIP_ROLES)}


@dataclass(frozen=True)
class BusinessAccess:
    user: User
    business: Business
    role: str

    def allows(self, minimum_role: str) -> bool:
        return ROLE_RANKS.get(self.role, len(ROLE_RANKS)) <= ROLE_RANKS[minimum_role]


def resolve_membership(
    db: Session,
    user_id: str,
    *,
    business_id: str | None = None,
) -> tuple[BusinessMembership, Business] | None:
    """Active membership for ``business_id``, or the user's most privileged one."""
    stmt = (
        select(BusinessMembership, Business)
        .join(Business, Business.id == BusinessMembership.business_id)
        .where(
            BusinessMembership.user_id == user_id,
            BusinessMembership.is_active.is_(True),
        )
    )
    if business_id:
        stmt = stmt.where(BusinessMembership.business_id == business_id)
    rank = case(ROLE_RANKS, value=BusinessMembership.role, else_=len(ROLE_RANKS))
    row = db.execute(stmt.order_by(rank, BusinessMembership.created_at.asc()).limit(1)).first()
    return (row[0], row[1]) if row else None


def get_access_claims(token: str = Depends(oauth2_scheme)) -> AccessClaims:
    try:
        return decode_access_token(token)
    except TokenValidationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def get_current_user(claims: AccessClaims = Depends(get_access_claims), db: Session = Depends(get_db)) -> User:
    user = db.get(User, claims.user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_business_access(
    claims: AccessClaims = Depends(get_access_claims),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> BusinessAccess:
    resolved = resolve_membership(db, user.id, business_id=claims.business_id)
    if not resolved:
        raise HTTPException(status_code=404, detail="Business not found")
    membership, business = resolved
    return BusinessAccess(user=user, business=business, role=membership.role.lower())


def require_role(minimum_role: str) -> Callable[[BusinessAccess], BusinessAccess]:
    """Dependency factory: ``owner`` passes every check, ``staff`` only ``require_role("staff")``."""
    if minimum_role not in ROLE_RANKS:
        raise ValueError(f"Unknown role '{minimum_role}'")

    def dependency(access: BusinessAccess = Depends(get_current_business_access)) -> BusinessAccess:
        if not access.allows(minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires the {minimum_role} role or higher",
            )
        return access

    return dependency
