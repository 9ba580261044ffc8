import logging
import os
from typing import Optional

from dotenv import load_dotenv
from jose import jwt, JWTError
from supabase import create_client, Client

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Use service role for backend
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY")

if not SUPABASE_URL:
    logger.warning("SUPABASE_URL not set. Record store will be unavailable.")
    supabase: Client | None = None
else:
    # Runners write job records outside any user session, so prefer the service role
    key_to_use = SUPABASE_KEY or SUPABASE_ANON_KEY
    if key_to_use:
        supabase: Client = create_client(SUPABASE_URL, key_to_use)
    else:
        logger.warning("No Supabase key found. Record store will be unavailable.")
        supabase = None


def get_supabase() -> Client | None:
    """Get the Supabase client instance."""
    return supabase


def verify_supabase_token(token: str) -> Optional[dict]:
    """
    Decode a Supabase JWT and return the user data.
    Returns None if the token cannot be decoded or has no subject.
    """
    if not token:
        return None

    try:
        decoded = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.warning(f"[Auth] JWT decode error: {e}")
        return None

    user_id = decoded.get("sub")
    if not user_id:
        logger.warning("[Auth] No user_id (sub) in decoded token")
        return None

    return {
        "id": user_id,
        "email": decoded.get("email"),
        "role": decoded.get("role", "authenticated"),
    }
