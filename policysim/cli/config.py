"""Configuration system for the simulator CLI with layered precedence.

Sources, highest precedence first:
CLI flags > environment variables > config file > auto-discovered file > defaults
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..azure.client import DEFAULT_BASE_URL
from ..policy.models import OutputMode
from ..reporting.exports import ExportFormat


class ConfigurationError(Exception):
    """Configuration could not be loaded or is invalid."""
    pass


class AzureConfig(BaseModel):
    """Target subscription, management groups and API endpoint."""
    subscription_id: Optional[str] = Field(default=None, description="Subscription to simulate moving")
    source_group: Optional[str] = Field(default=None, description="Current management group")
    target_group: Optional[str] = Field(default=None, description="Destination management group")
    base_url: str = Field(default=DEFAULT_BASE_URL, description="Management API endpoint")
    timeout_seconds: float = Field(default=60.0, ge=1.0, le=600.0, description="Per-request timeout")
    include_subscription_scope: bool = Field(
        default=True, description="Include assignments placed directly on the subscription"
    )


class ExecutionConfig(BaseModel):
    """Execution strategy and retry settings."""
    parallel: bool = Field(default=False, description="Evaluate resources concurrently")
    max_workers: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1, le=256, description="Worker count")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per remote call")
    base_delay: float = Field(default=1.0, ge=0.0, le=60.0, description="Initial backoff delay")
    max_delay: float = Field(default=30.0, ge=0.0, le=600.0, description="Backoff delay cap")
    include_disabled: bool = Field(default=False, description="Evaluate policies whose effect is Disabled")


class FilterConfig(BaseModel):
    """Resource selection."""
    resource_types: List[str] = Field(default_factory=list, description="Resource types to evaluate")
    resource_id: Optional[str] = Field(default=None, description="Single resource to evaluate")
    portal_mode: bool = Field(default=False, description="Mirror portal filtering for selected types")

    @field_validator('resource_types', mode='before')
    @classmethod
    def split_resource_types(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(',') if part.strip()]
        return v


class OutputConfig(BaseModel):
    """Result selection, export and summary output."""
    mode: OutputMode = Field(default=OutputMode.VIOLATIONS_ONLY, description="Which results to emit")
    export: bool = Field(default=True, description="Write a tabular export")
    export_format: ExportFormat = Field(default=ExportFormat.CSV, description="Export file format")
    output_dir: Optional[Path] = Field(default=None, description="Export directory (default: cwd)")
    summary_format: str = Field(default="text", description="Summary format")
    verbose: bool = Field(default=False, description="Verbose output")
    quiet: bool = Field(default=False, description="Quiet mode")

    @field_validator('summary_format')
    @classmethod
    def validate_summary_format(cls, v):
        if v not in ['json', 'yaml', 'text']:
            raise ValueError("summary_format must be one of: json, yaml, text")
        return v


class SimulatorConfiguration(BaseModel):
    """Complete CLI configuration with all sections."""

    azure: AzureConfig = Field(default_factory=AzureConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    # Metadata
    config_file_path: Optional[Path] = Field(default=None, description="Source config file")
    loaded_from: List[str] = Field(default_factory=list, description="Configuration sources")


class ConfigurationLoader:
    """Loads and merges configuration from multiple sources with proper precedence."""

    ENV_PREFIX = "POLICYSIM_"

    # Default configuration file names (searched in order)
    DEFAULT_CONFIG_FILES = [
        "policysim.yaml",
        "policysim.yml",
        ".policysim.yaml",
        ".policysim.yml",
        "policysim.json",
        ".policysim.json"
    ]

    # Environment variable suffix -> dotted configuration path
    ENV_MAPPING = {
        "SUBSCRIPTION_ID": "azure.subscription_id",
        "SOURCE_GROUP": "azure.source_group",
        "TARGET_GROUP": "azure.target_group",
        "BASE_URL": "azure.base_url",
        "TIMEOUT": "azure.timeout_seconds",
        "INCLUDE_SUBSCRIPTION_SCOPE": "azure.include_subscription_scope",
        "PARALLEL": "execution.parallel",
        "MAX_WORKERS": "execution.max_workers",
        "MAX_RETRIES": "execution.max_retries",
        "BASE_DELAY": "execution.base_delay",
        "MAX_DELAY": "execution.max_delay",
        "INCLUDE_DISABLED": "execution.include_disabled",
        "RESOURCE_TYPES": "filters.resource_types",
        "RESOURCE_ID": "filters.resource_id",
        "PORTAL_MODE": "filters.portal_mode",
        "OUTPUT_MODE": "output.mode",
        "EXPORT": "output.export",
        "EXPORT_FORMAT": "output.export_format",
        "OUTPUT_DIR": "output.output_dir",
        "SUMMARY_FORMAT": "output.summary_format",
        "VERBOSE": "output.verbose",
        "QUIET": "output.quiet",
    }

    BOOLEAN_KEYS = (
        '.include_subscription_scope', '.parallel', '.include_disabled',
        '.portal_mode', '.export', '.verbose', '.quiet',
    )

    def __init__(self):
        self.loaded_sources: List[str] = []

    def load_configuration(
        self,
        config_file: Optional[Path] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
        search_paths: Optional[List[Path]] = None
    ) -> SimulatorConfiguration:
        """Load configuration with proper precedence.

        Args:
            config_file: Explicitly specified config file
            cli_overrides: CLI flag overrides (nested dict)
            search_paths: Paths to search for config files

        Returns:
            Merged configuration

        Raises:
            ConfigurationError: If a file cannot be read or the result is invalid
        """
        self.loaded_sources = ["defaults"]
        config_data: Dict[str, Any] = {}

        if not config_file:
            discovered = self._discover_config_file(search_paths or [Path.cwd()])
            if discovered:
                source = discovered.pop("_source_file")
                config_data = self._merge_config(config_data, discovered)
                self.loaded_sources.append(f"auto-discovered: {source}")

        if config_file:
            if not config_file.exists():
                raise ConfigurationError(f"Configuration file not found: {config_file}")
            config_data = self._merge_config(config_data, self._load_config_file(config_file))
            self.loaded_sources.append(f"config file: {config_file}")

        env_config = self._load_environment_variables()
        if env_config:
            config_data = self._merge_config(config_data, env_config)
            self.loaded_sources.append("environment variables")

        if cli_overrides:
            config_data = self._merge_config(config_data, cli_overrides)
            self.loaded_sources.append("CLI flags")

        config_data["loaded_from"] = self.loaded_sources
        if config_file:
            config_data["config_file_path"] = config_file

        try:
            return SimulatorConfiguration(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def _discover_config_file(self, search_paths: List[Path]) -> Optional[Dict[str, Any]]:
        for search_path in search_paths:
            for config_filename in self.DEFAULT_CONFIG_FILES:
                config_path = search_path / config_filename
                if config_path.exists() and config_path.is_file():
                    config_data = self._load_config_file(config_path)
                    config_data["_source_file"] = str(config_path)
                    return config_data
        return None

    def _load_config_file(self, config_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML or JSON file."""
        suffix = config_path.suffix.lower()
        if suffix not in ('.yaml', '.yml', '.json'):
            raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}")

        try:
            content = config_path.read_text(encoding='utf-8')
            if suffix == '.json':
                data = json.loads(content)
            else:
                data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Error reading config file {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {}

        for suffix, config_path in self.ENV_MAPPING.items():
            env_value = os.getenv(f"{self.ENV_PREFIX}{suffix}")
            if env_value is not None:
                self._set_nested_value(config, config_path, self._convert_env_value(env_value, config_path))

        return config

    def _convert_env_value(self, value: str, config_path: str) -> Any:
        """Convert an environment variable string to the type its key expects."""
        if config_path.endswith(self.BOOLEAN_KEYS):
            return value.lower() in ('true', '1', 'yes', 'on')

        try:
            if config_path.endswith(('.timeout_seconds', '.base_delay', '.max_delay')):
                return float(value)
            if config_path.endswith(('.max_workers', '.max_retries')):
                return int(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {config_path}: {value!r}") from e

        if config_path.endswith('.output_dir'):
            return Path(value) if value else None

        return value

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any):
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            current = current.setdefault(key, {})

        current[keys[-1]] = value

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration dictionaries, with override taking precedence."""
        if not override:
            return base

        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result


def load_configuration(
    config_file: Optional[Path] = None,
    cli_overrides: Optional[Dict[str, Any]] = None,
    search_paths: Optional[List[Path]] = None
) -> SimulatorConfiguration:
    """Convenience function to load configuration."""
    loader = ConfigurationLoader()
    return loader.load_configuration(config_file, cli_overrides, search_paths)


def print_configuration(config: SimulatorConfiguration, format: str = "yaml") -> str:
    """Render the effective configuration as YAML or JSON."""
    config_dict = config.model_dump(
        mode="json",
        exclude={'loaded_from', 'config_file_path'},
        exclude_none=False
    )

    if format.lower() == "json":
        return json.dumps(config_dict, indent=2, default=str)
    else:
        return yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=True)


def validate_configuration(config: SimulatorConfiguration, require_targets: bool = True) -> List[str]:
    """Validate configuration and return a list of error messages (empty if valid).

    Args:
        config: Configuration to validate
        require_targets: Whether subscription and target group must be present
    """
    errors = []

    if require_targets:
        if not config.azure.subscription_id:
            errors.append("Subscription ID is required")
        if not config.azure.target_group:
            errors.append("Target management group is required")

    if config.output.verbose and config.output.quiet:
        errors.append("Cannot use both verbose and quiet modes")

    if config.execution.max_delay < config.execution.base_delay:
        errors.append("execution.max_delay must not be smaller than execution.base_delay")

    if config.filters.resource_id and not config.filters.resource_id.startswith('/subscriptions/'):
        errors.append(f"Resource ID must be a full ARM ID: {config.filters.resource_id}")

    if config.azure.subscription_id and config.filters.resource_id:
        prefix = f"/subscriptions/{config.azure.subscription_id}/".lower()
        if not config.filters.resource_id.lower().startswith(prefix):
            errors.append("Resource ID does not belong to the configured subscription")

    if config.output.export and config.output.output_dir:
        try:
            config.output.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            errors.append(f"Cannot create output directory {config.output.output_dir}: {e}")

    return errors
