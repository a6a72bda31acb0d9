"""
vanda/models/user.py

Brand owner account, keyed by the auth provider's subject id. Subscription
records reference it.
"""

import hashlib
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    display_name: Optional[str] = None
    status: str = "active"

    @staticmethod
    def normalized_display_name(user_id: str, display_name: Optional[str] = None) -> str:
        """Trimmed display name, or a stable @u_xxxxxx handle derived from user_id."""
        if display_name and display_name.strip():
            return display_name.strip()
        digest = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
        return f"@u_{digest[-6:]}"
