from __future__ import annotations

from dataclasses import dataclass, field

from schemaflow.core.config import Settings, get_settings


@dataclass(frozen=True)
class PollPolicy:
    interval: float
    max_attempts: int

    @property
    def budget(self) -> float | None:
        """Wall-clock limit for a whole watch; None when polling back to back."""
        total = self.interval * self.max_attempts
        return total if total > 0 else None


@dataclass(frozen=True)
class PipelineConfig:
    max_upload_size: int = 500 * 1024 * 1024
    allowed_mime_types: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {
                "text/csv",
                "application/vnd.ms-excel",
                "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            }
        )
    )
    allowed_extensions: frozenset[str] = frozenset({".csv", ".xlsx"})
    extraction_poll: PollPolicy = PollPolicy(interval=1.0, max_attempts=10)
    activation_poll: PollPolicy = PollPolicy(interval=5.0, max_attempts=24)
    synthetic_column_count: int = 10
    fingerprint_mode: str = "metadata"

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PipelineConfig:
        settings = settings or get_settings()
        return cls(
            max_upload_size=settings.max_upload_size,
            allowed_mime_types=frozenset(settings.allowed_mime_types),
            allowed_extensions=frozenset(ext.lower() for ext in settings.allowed_extensions),
            extraction_poll=PollPolicy(
                interval=settings.extraction_poll_interval,
                max_attempts=settings.extraction_max_attempts,
            ),
            activation_poll=PollPolicy(
                interval=settings.activation_poll_interval,
                max_attempts=settings.activation_max_attempts,
            ),
            synthetic_column_count=settings.synthetic_column_count,
            fingerprint_mode=settings.fingerprint_mode,
        )
