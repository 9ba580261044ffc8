"""
Request authentication dependencies.

Users authenticate with a Supabase JWT; the extraction worker authenticates
with the shared API key.
"""

import logging
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException

from enrichment.jobs.worker_queue import WorkerQueue, get_worker_queue
from enrichment.supabase_client import verify_supabase_token

logger = logging.getLogger(__name__)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_user(authorization: Optional[str] = Header(None)) -> Dict:
    """Extract and verify user from Supabase JWT token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    user_data = verify_supabase_token(token)
    if not user_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_data


async def verify_worker(
    authorization: Optional[str] = Header(None),
    queue: WorkerQueue = Depends(get_worker_queue)
) -> WorkerQueue:
    """Authenticate the extraction worker; raises WorkerAuthError (401) on mismatch."""
    queue.authenticate(_bearer_token(authorization))
    return queue
