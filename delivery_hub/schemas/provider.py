from pydantic import BaseModel, ConfigDict, Field

# Provider ids arrive as ints or strings depending on the endpoint
_provider_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class ProviderArea(BaseModel):
    model_config = _provider_config

    id: str
    name: str
    display_name: str | None = None
    is_active: bool = True
    geofence: dict | None = None


class ProviderDistrict(BaseModel):
    model_config = _provider_config

    id: str
    name: str
    areas: list[ProviderArea] = Field(default_factory=list)


class ProviderCity(BaseModel):
    model_config = _provider_config

    id: str
    name: str
    country_code: str = "NO"
    districts: list[ProviderDistrict] = Field(default_factory=list)


class ProviderServiceArea(BaseModel):
    """Flat service-area record used by the AI-assisted import."""
    model_config = _provider_config

    id: str
    name: str | None = None
    display_name: str | None = None
    is_active: bool = True
    geofence: dict | None = None

    @property
    def label(self) -> str:
        return self.name or self.display_name or f"Area {self.id}"
