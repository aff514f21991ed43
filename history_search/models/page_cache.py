"""Page cache model — fetched page bodies keyed by content address."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from history_search.database import Base


class PageCache(Base):
    """One cached page per content address (SHA-256 of the normalized URL).

    ``fetched_at`` is stored as naive UTC; SQLite has no timezone type.
    """

    __tablename__ = "page_cache"

    content_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        index=True,
    )
