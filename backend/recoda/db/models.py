
from sqlalchemy import Boolean, Column, Integer, LargeBinary, String

from .base import Base


class Recording(Base):
    __tablename__ = "recordings"
    # ids are never reused after a delete
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    blob = Column(LargeBinary, nullable=False)
    filename = Column(String, index=True, nullable=False)
    duration = Column(Integer, default=0)
    mime = Column(String, nullable=False)
    ts = Column(String, index=True, nullable=False)  # ISO-8601
    size = Column(Integer, default=0)
    synced = Column(Boolean, default=False)
