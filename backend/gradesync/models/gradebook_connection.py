"""
SQLAlchemy model for stored gradebook API connections.
"""

from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.sql import func

from gradesync.core.database import Base
from gradesync.core.gradebook_config import GradebookConnectionConfig
from gradesync.core.security import decrypt_credential


class GradebookConnection(Base):
    """
    Gradebook connection settings for a tenant.

    The client secret is stored AES encrypted; use to_config() to obtain a
    decrypted GradebookConnectionConfig.
    """

    __tablename__ = "gradebook_connections"

    tenant_id = Column(String(255), primary_key=True)
    id = Column(String(255), primary_key=True)

    display_name = Column(String(255), nullable=True)
    base_url = Column(String(500), nullable=False)
    token_url = Column(String(500), nullable=False)
    client_id = Column(String(255), nullable=False)
    encrypted_client_secret = Column(String(1024), nullable=False)
    encryption_iv = Column(String(64), nullable=False)

    is_group_enabled = Column(Boolean, default=False, nullable=False)
    allow_none_line_item_category = Column(Boolean, default=False, nullable=False)
    default_line_item_category = Column(String(255), nullable=True)
    auto_set_grading_period = Column(Boolean, default=False, nullable=False)
    created_by = Column(String(255), nullable=True)  # user id of the admin who added the connection

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def to_config(self, encryption_key: str) -> GradebookConnectionConfig:
        """Decrypt the stored secret and build a connection config."""
        client_secret = decrypt_credential(
            self.encrypted_client_secret, encryption_key, self.encryption_iv
        )
        return GradebookConnectionConfig(
            connection_id=self.id,
            tenant_id=self.tenant_id,
            display_name=self.display_name or "",
            base_url=self.base_url,
            token_url=self.token_url,
            client_id=self.client_id,
            client_secret=client_secret,
            is_group_enabled=bool(self.is_group_enabled),
            allow_none_line_item_category=bool(self.allow_none_line_item_category),
            default_line_item_category=self.default_line_item_category,
            auto_set_grading_period=bool(self.auto_set_grading_period)
        )

    def __repr__(self):
        return f"<GradebookConnection(tenant_id='{self.tenant_id}', id='{self.id}')>"
