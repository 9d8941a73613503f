import hmac
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException

from floor_control.config import load_app_config

MANAGER_ROLES = ("production_manager", "production_director")
SHIFT_ROLES = (
    "shift_supervisor",
    "shift_assistant",
    "adjuster",
    "senior_adjuster",
    "packer_foreman",
)


@dataclass
class Principal:
    """Caller identity as forwarded by the upstream authentication layer."""

    user_id: int | None = None
    role: str = "user"
    production_role: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_manager(self) -> bool:
        return self.is_admin or self.production_role in MANAGER_ROLES

    @property
    def is_shift_staff(self) -> bool:
        return self.is_manager or self.production_role in SHIFT_ROLES


def get_principal(
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_production_role: str | None = Header(default=None),
) -> Principal:
    return Principal(
        user_id=x_user_id,
        role=(x_user_role or "user").strip().lower(),
        production_role=(x_production_role or "").strip().lower() or None,
    )


def require_manager(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_manager:
        raise HTTPException(status_code=403, detail="production manager or director role required")
    return principal


def require_shift_staff(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_shift_staff:
        raise HTTPException(status_code=403, detail="shift staff role required")
    return principal


def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    expected = load_app_config().admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="invalid or missing X-Admin-Token")
