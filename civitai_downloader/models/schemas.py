from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FileConfig(BaseModel):
    """Settings read from ``config.toml``; keys are matched case-insensitively by the loader."""

    model_config = ConfigDict(extra="allow")

    savepath: Optional[str] = Field(None, description="Directory receiving downloaded files.")
    logapirequests: Optional[bool] = Field(None, description="Write API requests/responses to api.log.")
    apidelayms: Optional[int] = Field(None, ge=0, description="Delay between catalog API calls in milliseconds.")
    apiclienttimeoutsec: Optional[int] = Field(None, gt=0, description="HTTP client timeout in seconds.")
    apikey: Optional[str] = Field(None, description="Catalog API token sent as a bearer token.")

    @field_validator("savepath", "apikey", mode="before")
    @classmethod
    def blank_as_unset(cls, value: Optional[str]) -> Optional[str]:
        """Rendered templates leave empty strings for unset variables."""
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ExportEntry(BaseModel):
    relative_path: str
    size: Optional[int] = None
    is_dir: bool = False
    modified_at: datetime
