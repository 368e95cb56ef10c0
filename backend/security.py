import os
import logging
from dotenv import load_dotenv
from fastapi import HTTPException, Header

load_dotenv()
logger = logging.getLogger(__name__)
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "change-me")

def verify_admin(x_api_key: str = Header(default="")):
    """Guard for operator routes (sessions and survey structure)."""
    if x_api_key != ADMIN_API_KEY:
        logger.warning("Rejected admin request with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid admin API key")
