"""Configuration loader for Roundtable.

This module handles loading and parsing YAML configuration files
with proper error handling and validation.
"""

from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from roundtable.config.env_schema import EnvironmentConfig
from roundtable.config.models import FlowConfig
from roundtable.utils.exceptions import ConfigurationError
from roundtable.utils.logging import get_logger


logger = get_logger(__name__)


class ConfigLoader:
    """Loads and validates configuration from YAML files."""

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        environment: Optional[EnvironmentConfig] = None,
    ):
        """Initialize the configuration loader.

        Args:
            config_path: Path to the configuration file.
                        Defaults to 'roundtable.yml' in current directory.
            environment: Environment overrides. Read from the process
                        environment when omitted.
        """
        if config_path is None:
            config_path = Path("roundtable.yml")

        self.config_path = Path(config_path)
        self.environment = environment
        self._config: Optional[FlowConfig] = None

    def load(self) -> FlowConfig:
        """Load and validate the configuration file.

        Returns:
            Validated configuration object with environment overrides applied.

        Raises:
            ConfigurationError: If the configuration is invalid or cannot be loaded.
        """
        if self._config is not None:
            return self._config

        try:
            if not self.config_path.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {self.config_path}",
                    details={"path": str(self.config_path.absolute())},
                )

            logger.info(f"Loading configuration from: {self.config_path}")
            with open(self.config_path, "r", encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)

            if raw_config is None:
                raise ConfigurationError(
                    "Configuration file is empty",
                    details={"path": str(self.config_path)},
                )

            config = FlowConfig(**raw_config)
            environment = self.environment or EnvironmentConfig()
            self._config = environment.apply_to(config)

            logger.info(
                f"Configuration loaded successfully: "
                f"{len(self._config.participants)} participants, "
                f"moderator={'yes' if self._config.moderator else 'no'}"
            )

            return self._config

        except ConfigurationError:
            raise
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML syntax in configuration file: {e}",
                details={
                    "path": str(self.config_path),
                    "error": str(e),
                },
            )
        except ValidationError as e:
            # Format Pydantic validation errors nicely
            error_messages = []
            for error in e.errors():
                loc = " -> ".join(str(x) for x in error["loc"])
                msg = error["msg"]
                error_messages.append(f"{loc}: {msg}")

            raise ConfigurationError(
                "Configuration validation failed:\n" + "\n".join(error_messages),
                details={
                    "path": str(self.config_path),
                    "errors": e.errors(),
                },
            )
        except Exception as e:
            raise ConfigurationError(
                f"Failed to load configuration: {e}",
                details={
                    "path": str(self.config_path),
                    "error_type": type(e).__name__,
                },
            )

    def reload(self) -> FlowConfig:
        """Reload the configuration file.

        Returns:
            Validated configuration object.
        """
        self._config = None
        return self.load()

    @property
    def config(self) -> FlowConfig:
        """Get the loaded configuration, loading it if necessary."""
        if self._config is None:
            self.load()
        return self._config
