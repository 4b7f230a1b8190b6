"""
Copyright © 2026 Vladimir Vaulin-Belskii. All rights reserved.

Per-session runtime configuration snapshot taken from environment defaults.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field

from .config import settings


@dataclass
class RuntimeConfig:
    """Tunables used by one session's scheduler, buffer and upstream adapter."""

    extraction_interval_seconds: float = settings.extraction_interval_seconds
    extraction_timeout_seconds: float = settings.extraction_timeout_seconds
    min_delta_chars: int = settings.min_delta_chars
    transcript_trim_threshold: int = settings.transcript_trim_threshold
    transcript_keep_chars: int = settings.transcript_keep_chars
    upstream_handoff_seconds: float = settings.upstream_handoff_seconds
    sniff_binary_control: bool = settings.sniff_binary_control
    deepgram_options: dict = field(default_factory=lambda: {
        "model": settings.deepgram_model,
        "language": settings.deepgram_language,
        "encoding": settings.audio_encoding,
        "sample_rate": settings.audio_sample_rate,
        "channels": settings.audio_channels,
        "diarize": settings.diarize,
        "smart_format": settings.smart_format,
        "interim_results": False,
    })

    def as_dict(self) -> dict:
        """Return the runtime config as a JSON-serializable dict."""
        return asdict(self)
