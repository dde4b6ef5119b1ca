from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class AdEntity:
    """Dimension tuple identifying one ad: platform, account, campaign, ad group and ad."""
    platform: str | None
    project_id: int | None
    ads_account_id: str | None
    campaign_id: str | None
    campaign_name: str | None
    adset_id: str | None
    adset_name: str | None
    ad_id: str | None
    ad_name: str | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AdEntity:
        return cls(**{name: row.get(name) for name in cls.__dataclass_fields__})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ActionCommand:
    """An automation action to apply to one ad entity."""
    entity: AdEntity
    action: str
    magnitude: float | None = None


@dataclass(frozen=True)
class ActionOutcome:
    success: bool
    message: str | None = None
