"""
Executor configuration.

Settings come from ``GRAPH_PLAN_*`` environment variables (or a ``.env``
file) and can be overridden per call::

    config = ExecutorConfig.from_settings(max_workers=4)
"""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from graph_plan._policy import ImmutabilityPolicy

__all__ = ["ExecutorConfig", "load_policy"]

env_prefix = "GRAPH_PLAN_"


class _GraphPlanSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", env_prefix=env_prefix
    )
    apply_timeout: Optional[float] = None
    max_workers: Optional[int] = None
    retry_attempts: Optional[int] = None
    retry_wait: Optional[float] = None
    state_path: Optional[str] = None
    immutable_fields_path: Optional[str] = None


class ExecutorConfig(BaseModel, frozen=True):
    """
    Configuration for applying a plan.

    Attributes:
        apply_timeout: Seconds a single provider call may take before the
            item is failed
        max_workers: How many independent items may be applied at once;
            1 applies strictly in plan order
        retry_attempts: Total attempts for a provider call that fails with
            a retryable ProviderError
        retry_wait: Seconds to wait between attempts
        state_path: Where the recorded state is persisted (optional)
        immutable_fields_path: JSON file holding the immutability policy
            (optional)
    """

    apply_timeout: float = Field(default=300.0, gt=0)
    max_workers: int = Field(default=1, ge=1)
    retry_attempts: int = Field(default=1, ge=1)
    retry_wait: float = Field(default=0.0, ge=0)
    state_path: Optional[str] = None
    immutable_fields_path: Optional[str] = None

    @classmethod
    def from_settings(cls, **kwargs) -> "ExecutorConfig":
        """Create an instance from environment settings with optional overrides."""
        settings = _GraphPlanSettings()

        params = {
            name: value
            for name, value in settings.model_dump().items()
            if value is not None
        }

        # Override with any provided kwargs
        params.update(kwargs)

        return cls(**params)


def load_policy(config: ExecutorConfig) -> ImmutabilityPolicy:
    """Load the configured immutability policy, or an empty one."""
    if config.immutable_fields_path is None:
        return ImmutabilityPolicy()
    return ImmutabilityPolicy.from_file(config.immutable_fields_path)
