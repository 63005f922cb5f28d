"""
Actor Directory Adapters

In-process directory for development and tests, and a REST client for the
procurement system's user store.
"""

import httpx
import logging
import threading
from typing import Dict, List, Optional

from .exceptions import UpstreamUnavailableError
from .ports import ActorDirectory, UserRef
from .roles import Role

logger = logging.getLogger("procurement_approvals.directory")


class InMemoryActorDirectory(ActorDirectory):
    """Role membership held in memory; the first active member of a role wins"""

    def __init__(self, members: Optional[Dict[Role, List[UserRef]]] = None):
        self._members: Dict[Role, List[UserRef]] = {}
        self._inactive = set()
        self._lock = threading.Lock()
        for role, users in (members or {}).items():
            for user in users:
                self.add_user(role, user)

    def add_user(self, role: Role, user: UserRef) -> None:
        with self._lock:
            self._members.setdefault(Role.parse(role), []).append(user)

    def deactivate_user(self, user_id: str) -> None:
        with self._lock:
            self._inactive.add(user_id)

    def find_active_user_with_role(self, role: Role) -> Optional[UserRef]:
        with self._lock:
            for user in self._members.get(Role.parse(role), []):
                if user.id not in self._inactive:
                    return user
            return None


class HttpActorDirectory(ActorDirectory):
    """REST client for the procurement user store"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def find_active_user_with_role(self, role: Role) -> Optional[UserRef]:
        """GET /users?roleId=<id>&isActive=true and take the first user"""
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.get(
                f"{self.base_url}/users",
                params={"roleId": int(role), "isActive": "true"},
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Actor directory request failed: {e}")
            raise UpstreamUnavailableError(f"Actor directory unreachable: {e}") from e

        if response.status_code != 200:
            logger.warning(f"Actor directory returned {response.status_code}: {response.text}")
            raise UpstreamUnavailableError(
                f"Actor directory returned HTTP {response.status_code}"
            )

        try:
            payload = response.json()
            users = payload["data"] if isinstance(payload, dict) else payload
            if not isinstance(users, list):
                raise TypeError(f"expected a list of users, got {type(users).__name__}")
            if not users:
                return None

            user = users[0]
            return UserRef(
                id=str(user["id"]),
                name=user.get("name") or "",
                email=user.get("email") or ""
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Actor directory returned a malformed payload: {e!r}")
            raise UpstreamUnavailableError(
                f"Actor directory returned a malformed payload: {e!r}"
            ) from e

    def close(self) -> None:
        self._client.close()
