"""Key/value entry model"""
from sqlalchemy import Column, DateTime, String, Text

from issue_relay.models.base import Base


class KeyValueEntry(Base):
    """Expiring key/value row backing the SQL key-value store"""

    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<KeyValueEntry(key='{self.key}', expires_at={self.expires_at})>"
