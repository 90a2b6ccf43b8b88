"""
SQLAlchemy ORM Models for the cache service

The catalog and the guide live in separate SQLite files, so each has its own
declarative base and metadata.
"""
from datetime import datetime, timezone
from sqlalchemy import DateTime, Index, Integer, String, Text, TypeDecorator
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class UTCDateTime(TypeDecorator):
    """Stores naive UTC datetimes and hands back timezone-aware UTC values"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class CatalogBase(DeclarativeBase):
    """Base class for catalog tables"""
    pass


class GuideBase(DeclarativeBase):
    """Base class for guide tables"""
    pass


class ChannelRow(CatalogBase):
    """Serialized channel record from the last successful rebuild"""
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<ChannelRow(id={self.id})>"


class GenreRow(CatalogBase):
    """Genre set of the last successful rebuild"""
    __tablename__ = "genres"

    genre: Mapped[str] = mapped_column(String, primary_key=True)


class CatalogMetadata(CatalogBase):
    """Key/value metadata: lastUpdated, m3uUrl, epgUrls"""
    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)


class Program(GuideBase):
    """Program interval for a normalized channel id"""
    __tablename__ = "programs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    stop_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index("idx_channel_time", "channel_id", "start_time", "stop_time"),
        Index("idx_stop_time", "stop_time"),
    )

    def __repr__(self) -> str:
        return f"<Program(id={self.id}, title={self.title}, channel={self.channel_id})>"


class ChannelIcon(GuideBase):
    """Icon URL per normalized channel id, last write wins"""
    __tablename__ = "channel_icons"

    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    icon_url: Mapped[str] = mapped_column(String, nullable=False)


class GuideMetadata(GuideBase):
    """Key/value metadata for the guide: lastUpdate, source"""
    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
