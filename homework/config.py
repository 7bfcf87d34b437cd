"""
Environment-driven configuration for the submission pipeline.

Credentials are read once at startup and handed to the components that need
them. A provider selected without its key is a ConfigError here, not a
failure halfway through a student's submission.
"""

import os
from typing import Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from auth.supabase_client import normalize_supabase_url
from homework.errors import ConfigError

DEFAULT_LLM_MODELS = {
    "gemini": "gemini-1.5-flash",
    "openai": "gpt-4o-mini",
    "groq": "llama-3.3-70b-versatile",
    "stub": "stub",
}

_ENV_FIELDS = {
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_ANON_KEY": "supabase_anon_key",
    "SUPABASE_SERVICE_ROLE_KEY": "supabase_service_role_key",
    "SUBMISSIONS_BUCKET": "bucket",
    "SUBMISSIONS_TABLE": "table",
    "UPLOAD_MAX_WORKERS": "upload_max_workers",
    "OCR_PROVIDER": "ocr_provider",
    "OCR_SPACE_API_KEY": "ocr_space_api_key",
    "OCR_SPACE_URL": "ocr_space_url",
    "OCR_LANGUAGE": "ocr_language",
    "OCR_TIMEOUT_SECONDS": "ocr_timeout_seconds",
    "OCR_POLICY": "ocr_policy",
    "OCR_MAX_WORKERS": "ocr_max_workers",
    "GOOGLE_CLOUD_VISION_CREDENTIALS_JSON": "google_credentials_json",
    "LLM_PROVIDER": "llm_provider",
    "LLM_MODEL": "llm_model",
    "GEMINI_API_KEY": "gemini_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "GROQ_API_KEY": "groq_api_key",
    "RECORD_MODE": "record_mode",
}


class PipelineConfig(BaseModel):
    # Storage / database
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    bucket: str = "submissions"
    table: str = "submissions"
    upload_max_workers: int = Field(default=1, ge=1)
    record_mode: Literal["insert", "upsert"] = "insert"

    # OCR
    ocr_provider: Literal["ocrspace", "google", "stub"] = "ocrspace"
    ocr_space_api_key: Optional[str] = None
    ocr_space_url: str = "https://api.ocr.space/parse/image"
    ocr_language: str = "eng"
    ocr_timeout_seconds: float = Field(default=60, gt=0)
    ocr_policy: Literal["strict", "best_effort"] = "strict"
    ocr_max_workers: int = Field(default=4, ge=1)
    google_credentials_json: Optional[str] = None

    # Generative evaluation
    llm_provider: Literal["gemini", "openai", "groq", "stub"] = "gemini"
    llm_model: Optional[str] = None
    gemini_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None

    @property
    def model_name(self) -> str:
        return self.llm_model or DEFAULT_LLM_MODELS[self.llm_provider]

    @property
    def database_key(self) -> Optional[str]:
        """Service role key when available, otherwise the anon key (RLS applies)."""
        return self.supabase_service_role_key or self.supabase_anon_key

    def require_credentials(self) -> None:
        """
        Fail fast when a selected capability has no credential.

        Raises:
            ConfigError listing every missing variable
        """
        missing = []
        if not normalize_supabase_url(self.supabase_url):
            missing.append("SUPABASE_URL")
        if not self.database_key:
            missing.append("SUPABASE_SERVICE_ROLE_KEY or SUPABASE_ANON_KEY")
        if self.ocr_provider == "ocrspace" and not self.ocr_space_api_key:
            missing.append("OCR_SPACE_API_KEY")
        key_for_llm = {
            "gemini": ("GEMINI_API_KEY", self.gemini_api_key),
            "openai": ("OPENAI_API_KEY", self.openai_api_key),
            "groq": ("GROQ_API_KEY", self.groq_api_key),
        }
        if self.llm_provider in key_for_llm:
            name, value = key_for_llm[self.llm_provider]
            if not value:
                missing.append(name)
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")


def load_config(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> PipelineConfig:
    """
    Build PipelineConfig from environment variables.

    Args:
        env: Mapping to read instead of os.environ (tests)
        dotenv_path: Optional .env file loaded into os.environ first

    Returns:
        PipelineConfig

    Raises:
        ConfigError if a variable has an invalid value
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ
    values = {}
    for var, field in _ENV_FIELDS.items():
        raw = (env.get(var) or "").strip()
        if raw:
            values[field] = raw.lower() if field in ("ocr_provider", "ocr_policy", "llm_provider", "record_mode") else raw
    try:
        return PipelineConfig(**values)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
