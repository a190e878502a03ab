"""
Service configuration, read from the environment (.env supported).
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .pipeline.credits import RateCard


class StudioSettings(BaseModel):
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    generation_endpoint_url: str = ""
    generation_api_key: str = ""
    redis_url: Optional[str] = None
    shared_secret: str = ""
    environment: str = "development"

    poll_interval_seconds: float = 2.0
    autosave_delay_seconds: float = 0.5
    balance_max_age_seconds: float = 30.0
    dispatch_max_retries: int = 3
    dispatch_timeout_seconds: float = 30.0

    rates: RateCard = RateCard()

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def load_settings() -> StudioSettings:
    load_dotenv()
    supabase_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    endpoint = os.getenv("GENERATION_ENDPOINT_URL", "")
    if not endpoint and supabase_url:
        endpoint = f"{supabase_url}/functions/v1/trigger-generation"

    return StudioSettings(
        supabase_url=supabase_url,
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        generation_endpoint_url=endpoint,
        generation_api_key=os.getenv("GENERATION_API_KEY", ""),
        redis_url=os.getenv("REDIS_URL") or None,
        shared_secret=os.getenv("STUDIO_SHARED_SECRET", ""),
        environment=os.getenv("ENVIRONMENT", "development"),
        poll_interval_seconds=_float("POLL_INTERVAL_SECONDS", 2.0),
        autosave_delay_seconds=_float("AUTOSAVE_DELAY_SECONDS", 0.5),
        balance_max_age_seconds=_float("BALANCE_MAX_AGE_SECONDS", 30.0),
        dispatch_max_retries=int(os.getenv("DISPATCH_MAX_RETRIES", "3")),
        dispatch_timeout_seconds=_float("DISPATCH_TIMEOUT_SECONDS", 30.0),
    )
