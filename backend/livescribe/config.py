"""
Copyright © 2026 Vladimir Vaulin-Belskii. All rights reserved.

Application configuration powered by environment variables.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Centralized configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=(".env", "../.env", "../../.env"), env_prefix="", case_sensitive=False, extra="ignore")

    app_name: str = "livescribe"
    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: Optional[str] = None
    allowed_origins: str = "*"
    forwarded_allow_ips: str = "*"

    deepgram_api_key: str = ""
    deepgram_url: str = "wss://api.deepgram.com/v1/listen"
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    audio_encoding: str = "linear16"
    audio_sample_rate: int = 16000
    audio_channels: int = 1
    diarize: bool = True
    smart_format: bool = True
    upstream_handoff_seconds: float = 55 * 60

    llm_provider: str = "gemini"
    llm_model: str = "gemini-2.5-flash"
    llm_temperature: float = 1.0
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    ollama_base_url: str = "http://localhost:11434"

    extraction_interval_seconds: float = 10.0
    extraction_timeout_seconds: float = 15.0
    min_delta_chars: int = 10
    transcript_trim_threshold: int = 50_000
    transcript_keep_chars: int = 40_000

    # Treat binary frames that look like JSON/template commands as text.
    # Only for clients that cannot send typed text frames.
    sniff_binary_control: bool = False

    log_level: str = "info"
    log_file: Optional[str] = None

settings = Settings()
