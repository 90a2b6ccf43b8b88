from pydantic import BaseModel, Field, field_validator


class ChannelRecord(BaseModel):
    """Channel produced by the playlist transform"""
    id: str = Field(..., description="Routing id, usually 'tv|<tvg-id>'")
    name: str = Field(..., description="Display name of the channel")
    genres: list[str] = Field(default_factory=list, description="Genre labels")
    guide_id: str | None = Field(None, description="tvg-id linking the channel to the guide")
    number: str | None = Field(None, description="Channel number (tvg-chno)")
    logo: str | None = None
    poster: str | None = None
    background: str | None = None
    description: str | None = None


class CatalogConfig(BaseModel):
    """User configuration driving catalog rebuilds and guide ingestion"""
    m3u: str | None = Field(None, description="Playlist URL")
    epg: str | None = Field(None, description="Guide source: URL, comma list, or URL of a URL list")
    epg_enabled: bool = True
    update_interval: str | None = Field("12:00", description="Catalog refresh interval as HH:MM")
    id_suffix: str | None = None
    remapper_path: str | None = None

    @field_validator("m3u", "epg", "id_suffix", "remapper_path", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        """Treat blank strings as unset"""
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ProgramResponse(BaseModel):
    """Single program data"""
    title: str
    description: str | None
    category: str | None
    start_time: str
    stop_time: str
    start: str = Field(..., description="Start time as HH:MM in the display offset")
    stop: str = Field(..., description="Stop time as HH:MM in the display offset")


class ChannelDetailsResponse(BaseModel):
    """Channel joined with its guide data"""
    channel: ChannelRecord
    icon: str | None
    current_program: ProgramResponse | None
    upcoming_programs: list[ProgramResponse]


class ChannelListResponse(BaseModel):
    """Filtered channel listing"""
    count: int
    channels: list[ChannelRecord]


class RebuildRequest(BaseModel):
    """Manual catalog rebuild request"""
    url: str | None = Field(None, description="Playlist URL; defaults to the configured one")
    config: CatalogConfig | None = None


class StatusResponse(BaseModel):
    """Combined status of both stores"""
    is_updating: bool
    last_update: str
    channels_count: int
    icons_count: int
    programs_count: int
    catalog_channels: int
    catalog_genres: int
    catalog_last_updated: str | None
    timezone: str
    storage_type: str
