"""
Gradebook connection configuration.
"""

from typing import Optional
from pydantic import BaseModel, validator


NONE_CATEGORY = "none"


class GradebookConnectionConfig(BaseModel):
    """Decrypted configuration for one gradebook (OneRoster) API connection."""
    connection_id: str
    tenant_id: str
    display_name: str = ""
    base_url: str
    token_url: str
    client_id: str
    client_secret: str
    is_group_enabled: bool = False
    allow_none_line_item_category: bool = False
    default_line_item_category: Optional[str] = None
    auto_set_grading_period: bool = False

    @validator('base_url', 'token_url')
    def validate_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Gradebook URLs must start with http:// or https://')
        return v.rstrip('/')

    @property
    def default_category_id(self) -> Optional[str]:
        """Default line item category, when the connection policy allows one."""
        if not self.allow_none_line_item_category:
            return None
        if not self.default_line_item_category or self.default_line_item_category == NONE_CATEGORY:
            return None
        return self.default_line_item_category
