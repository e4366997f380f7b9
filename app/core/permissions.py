from fastapi import Depends, HTTPException, status

from app.core.security import require_auth
from app.repositories.user import UserRepository


def get_current_user_profile(auth_payload: dict = Depends(require_auth)) -> dict:
    """Get the public user row for the bearer token's subject.

    Args:
        auth_payload: JWT payload from require_auth dependency

    Returns:
        User row from public.users (includes beta window and Stripe customer id)

    Raises:
        HTTPException 401 if the token has no subject
        HTTPException 404 if the user row does not exist
    """
    auth_id = auth_payload.get("sub")
    if not auth_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload: missing sub claim"
        )

    user = UserRepository.get_by_id(auth_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User profile not found. Please complete registration."
        )

    return user
