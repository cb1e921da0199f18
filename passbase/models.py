from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class CredentialState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    REFRESHING = "refreshing"


@dataclass
class CyclistCredential:
    connected: bool = False
    provider_athlete_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry_epoch_s: Optional[int] = None


@dataclass
class Cyclist:
    id: Optional[int] = None
    name: str = ""
    email: Optional[str] = None
    credential: CyclistCredential = field(default_factory=CyclistCredential)


@dataclass
class MountainPass:
    id: str = ""
    name: str = ""
    lat: float = 0.0
    lng: float = 0.0
    country: Optional[str] = None
    region: Optional[str] = None
    max_altitude_m: Optional[float] = None
    category: Optional[str] = None


@dataclass
class ExternalActivity:
    id: str = ""
    type: str = ""
    start_date: str = ""
    start_date_local: Optional[str] = None
    name: str = ""
    start_latlng: Optional[tuple[float, float]] = None
    end_latlng: Optional[tuple[float, float]] = None


@dataclass
class ConquestRecord:
    pass_id: str = ""
    date_completed: str = ""
    time_completed: Optional[str] = None
    external_activity_id: Optional[str] = None
    external_activity_url: Optional[str] = None
    synced_from_external: bool = False
    personal_notes: Optional[str] = None
    photos: list[str] = field(default_factory=list)


@dataclass
class RaceFinish:
    id: Optional[int] = None
    cyclist_id: Optional[int] = None
    race_id: str = ""
    race_name: Optional[str] = None
    year: Optional[int] = None
    finish_time_seconds: int = 0
    finish_time_display: str = ""
    is_pr: bool = False
    date_completed: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class SyncResult:
    synced_count: int = 0
    new_conquests: list[ConquestRecord] = field(default_factory=list)
