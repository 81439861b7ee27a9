"""Identity helpers for FastAPI endpoints.

Authentication itself happens upstream; the gateway forwards the resolved
actor as ``X-User-Id`` and a comma-separated ``X-User-Roles`` header.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from fastapi import Depends, Header, HTTPException, status

# Highest privilege first; used to pick the role presented to the workflow engine.
_ROLE_PRECEDENCE: Tuple[str, ...] = ("admin", "moderator", "member")


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles

	@property
	def primary_role(self) -> str:
		for role in _ROLE_PRECEDENCE:
			if role in self.roles:
				return role
		return "member"

	@property
	def is_staff(self) -> bool:
		return self.has_role("admin") or self.has_role("moderator")


def parse_roles(raw: Optional[str]) -> Tuple[str, ...]:
	if not raw:
		return ()
	roles = (part.strip().lower() for part in raw.split(","))
	# "system" is reserved for in-process jobs and never accepted from a request
	return tuple(role for role in roles if role and role != "system")


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
) -> AuthenticatedUser:
	user_id = (x_user_id or "").strip()
	if not user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
	return AuthenticatedUser(id=user_id, roles=parse_roles(x_user_roles))


def require_roles(*required: Iterable[str]):
	"""Return a dependency that enforces the presence of any of the given roles.

	Usage:
		@router.get("/queue", dependencies=[Depends(require_roles("admin", "moderator"))])
	"""
	required_set = {str(r).strip() for r in required if str(r).strip()}

	async def _dep(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
		if not required_set:
			return user
		if any(user.has_role(r) for r in required_set):
			return user
		raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")

	return _dep
