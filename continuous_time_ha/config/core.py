"""Master configuration class composing all sub-configurations.

Contains the top-level ``Config`` class that aggregates the model, grid,
income and solver configuration into one object with YAML loading, saving,
dictionary overrides and logging setup.
"""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
import yaml

from .model import GridConfig, IncomeConfig, ModelParams
from .reporting import LoggingConfig
from .solver import HJBOptions, KFEOptions, MPCOptions, SimulationOptions
from .utils import deep_merge


class Config(BaseModel):
    """Complete configuration for one steady-state solve.

    Examples:
        All defaults, a two-asset model with two income states::

            config = Config()

        Loading from file::

            config = Config.from_yaml(Path("baseline.yaml"))

        Overriding a nested value::

            config = Config.from_dict({"params": {"r_a": 0.02}}, base_config=config)
    """

    params: ModelParams = Field(default_factory=ModelParams)
    grid: GridConfig = Field(default_factory=GridConfig)
    income: IncomeConfig = Field(default_factory=IncomeConfig)
    hjb: HJBOptions = Field(default_factory=HJBOptions)
    kfe: KFEOptions = Field(default_factory=KFEOptions)
    mpc: MPCOptions = Field(default_factory=MPCOptions)
    simulation: SimulationOptions = Field(default_factory=SimulationOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Config object with validated parameters.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValidationError: If configuration is invalid.
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        # Remove private anchors if present
        data = {k: v for k, v in data.items() if not k.startswith("_")}

        return cls(**data)

    @classmethod
    def from_dict(cls, data: dict, base_config: Optional["Config"] = None) -> "Config":
        """Create config from dictionary, optionally overriding base config.

        Args:
            data: Dictionary with configuration parameters.
            base_config: Optional base configuration to override.

        Returns:
            Config object with validated parameters.
        """
        if base_config is None:
            return cls(**data)

        merged = deep_merge(base_config.model_dump(), data)
        return cls(**merged)

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file.

        Args:
            path: Path where to save the configuration.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)

    def setup_logging(self) -> None:
        """Configure logging based on settings.

        Sets up logging handlers for console and/or file output based
        on the logging configuration.
        """
        if not self.logging.enabled:
            return

        import logging
        import sys

        logger = logging.getLogger("continuous_time_ha")
        logger.setLevel(getattr(logging, self.logging.level))
        logger.handlers.clear()

        formatter = logging.Formatter(self.logging.format)

        if self.logging.console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

        if self.logging.log_file:
            log_path = Path(self.logging.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
