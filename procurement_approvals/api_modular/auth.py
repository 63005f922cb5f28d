"""
Request dependencies: the engine bound to the app and the calling actor
"""

from fastapi import HTTPException, Request, status

from ..engine import ApprovalEngine


def get_engine(request: Request) -> ApprovalEngine:
    """Engine stored on the application by create_app"""
    return request.app.state.engine


def get_actor_id(request: Request) -> str:
    """
    Authenticated actor id, set by the upstream auth layer in a header.

    The engine has no identity system of its own; it trusts this header.
    """
    header = request.app.state.actor_header
    actor_id = request.headers.get(header)
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {header} header"
        )
    return actor_id.strip()
