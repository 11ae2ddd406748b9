"""Settings for the FreightDesk assistant, read from the environment or ``.env``."""
from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

from freightdesk.models.budget import BudgetPolicy, PricingBlend


APP_MODES = {"demo", "production"}
PLACEHOLDER_API_KEYS = {"sk-your-key-here", "changeme"}
LOCAL_LLM_HOSTS = {"localhost", "127.0.0.1", "::1"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # Service and tenancy
    log_level: str = "INFO"
    app_mode: str = "demo"
    auth_enabled: bool = False
    default_tenant_id: str = "demo"
    tenant_tokens: str = ""
    cors_origins: str = "*"

    # Storage
    assistant_state_path: str = "./data/assistant_state.db"
    knowledge_db_path: str = "./data/knowledge.db"

    # Session budget policy
    budget_max_tokens: int = 50000
    budget_max_cost_usd: float = 0.50
    budget_max_turns: int = 10
    budget_warn_threshold_percent: float = 80.0
    budget_session_ttl_seconds: int = 1800
    budget_default_estimated_tokens: int = 10000

    # Blended per-token pricing used for admission estimates
    price_input_per_token: float = 0.000003
    price_output_per_token: float = 0.000015
    price_input_share: float = 0.3

    # Investigation router
    conversation_history_turns: int = 10

    # LLM
    openai_api_key: str = ""
    openai_base_url: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.1
    llm_timeout_seconds: float = 45.0
    investigation_quick_max_steps: int = 3
    investigation_deep_max_steps: int = 8
    investigation_quick_max_tokens: int = 2048
    investigation_deep_max_tokens: int = 4096

    # Learning queue
    learning_similar_terms_limit: int = 5
    learning_similarity_threshold: float = 0.8
    learning_rejection_signal_threshold: int = 2

    def budget_policy(self) -> BudgetPolicy:
        return BudgetPolicy(
            max_tokens=self.budget_max_tokens,
            max_cost_usd=self.budget_max_cost_usd,
            max_turns=self.budget_max_turns,
            warn_threshold_percent=self.budget_warn_threshold_percent,
        )

    def pricing_blend(self) -> PricingBlend:
        return PricingBlend(
            input_per_token=self.price_input_per_token,
            output_per_token=self.price_output_per_token,
            input_share=self.price_input_share,
        )

    def resolved_openai_api_key(self) -> str | None:
        """Key for the inference client, or None when inference is unconfigured.

        Self-hosted OpenAI-compatible endpoints on a local host get a dummy key
        because the SDK refuses an empty one.
        """
        key = (self.openai_api_key or "").strip()
        if key and key not in PLACEHOLDER_API_KEYS:
            return key
        host = ""
        if self.openai_base_url:
            try:
                host = (urlparse(self.openai_base_url).hostname or "").lower()
            except ValueError:
                host = ""
        if host in LOCAL_LLM_HOSTS or host.endswith(".local"):
            return "local-dev"
        return None

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in APP_MODES else "production"

    def auth_required(self) -> bool:
        # Production always authenticates, whatever AUTH_ENABLED says.
        return self.auth_enabled or self.normalized_app_mode() == "production"

    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in (self.cors_origins or "").split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
