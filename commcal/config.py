from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///data/commcal.db"
    log_level: str = "INFO"
    timezone: str = "America/Los_Angeles"
    fetch_timeout: float = 30.0
    user_agent: str = "CommCal/1.0"
    import_display_limit: int = 5
    skip_old_default: bool = True

    plancast_api_url: str = "http://api.plancast.com/02/plans/show.json"
    meetup_api_url: str = "https://api.meetup.com/2/event"
    meetup_api_key: str = ""
    facebook_graph_url: str = "https://graph.facebook.com"
    facebook_access_token: str = ""

    @field_validator("timezone", mode="before")
    @classmethod
    def default_empty_timezone(cls, v: str) -> str:
        if not v or not v.strip():
            return "America/Los_Angeles"
        return v

    model_config = {"env_prefix": "", "case_sensitive": False}


settings = Settings()
