"""
Configuration Management for Foreman.

WHAT THIS FILE DOES:
-------------------
Loads and validates configuration from YAML files with sensible defaults,
then applies environment overrides (a local .env file is honoured). The
result is a Config object the agent, the shell engine and the scheduler
read from.

CONFIG FILE LOCATION:
--------------------
Default: ~/.foreman/config.yaml (then ./foreman.yaml)

CONFIG FORMAT:
-------------
```yaml
provider:
  type: "ollama"            # or "openai"
  model: "qwen3:4b"
  base_url: "http://localhost:11434"
  max_tokens: 4096
  temperature: 0.7

tools: ["file", "shell", "http"]

memory:
  persistent: false
  file: "~/.foreman/memory.json"
  max_context_length: 8192

security:
  allowed_directories: ["./", "../"]
  blocked_commands: ["shutdown", "reboot", "format"]
  auto_approve_dangerous: false

scheduler:
  priority_threshold: 8
  strict_cycles: false
  validation: "keyword"     # or "exit_code"
```

SECURITY SETTINGS ARE LIVE:
--------------------------
Tools never copy SecurityConfig. They receive a callable returning the
current one and call it on every execution, so edits made at runtime
(approvals, a new allowed directory) apply to the very next command.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from errors import ConfigError


PROVIDER_TYPES = ("ollama", "openai")
VALIDATION_MODES = ("keyword", "exit_code")
DEFAULT_CONFIG_DIR = Path.home() / ".foreman"


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class ProviderConfig:
    """Which LLM service to talk to and how."""
    type: str = "ollama"
    model: str = "qwen3:4b"
    base_url: Optional[str] = None
    api_key_env: Optional[str] = "OPENAI_API_KEY"
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: float = 120.0

    def get_api_key(self) -> Optional[str]:
        """Get API key from environment variable."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class MemoryConfig:
    """Conversation memory settings."""
    persistent: bool = False
    file: str = str(DEFAULT_CONFIG_DIR / "memory.json")
    max_context_length: int = 8192
    context_window_tokens: int = 4096
    save_debounce_ms: int = 100

    @property
    def file_path(self) -> Path:
        return Path(self.file).expanduser()


@dataclass
class SecurityConfig:
    """
    Command and filesystem safety policy.

    allowed_directories are resolved against the working directory at the
    moment of each check, so "./" always means "where we are now".
    """
    allowed_directories: list[str] = field(default_factory=lambda: ["./", "../"])
    blocked_commands: list[str] = field(
        default_factory=lambda: ["shutdown", "reboot", "halt", "poweroff", "format", "mkfs"]
    )
    auto_approve_dangerous: bool = False
    default_timeout_ms: int = 30000
    grace_period_ms: int = 200


@dataclass
class SchedulerConfig:
    """Plan execution settings."""
    priority_threshold: int = 8
    max_iterations: int = 5
    strict_cycles: bool = False
    validation: str = "keyword"
    isolate_working_directory: bool = False
    planning_retries: int = 2


@dataclass
class SystemConfig:
    """System prompt settings."""
    prompt_file: Optional[str] = None


@dataclass
class Config:
    """
    Complete configuration for Foreman.

    This is the main configuration object that holds all settings.
    It can be loaded from a YAML file or created with defaults.
    """
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    tools: list[str] = field(default_factory=lambda: ["file", "shell", "http"])
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    log_level: str = "INFO"

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """
    Get the default configuration.

    Works out of the box against a local Ollama server.
    """
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _parse_section(cls, data: Any, name: str):
    """
    Build one dataclass section from a dict, checking keys and types.

    Raises:
        ConfigError: If the section is not a mapping, has unknown keys, or a
            value has the wrong type
    """
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")

    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys in config section '{name}': {sorted(unknown)}")

    values = {}
    for key, value in data.items():
        expected = getattr(defaults, key)
        if expected is not None and value is not None:
            if isinstance(expected, bool) and not isinstance(value, bool):
                raise ConfigError(f"'{name}.{key}' must be true or false")
            if isinstance(expected, float) and isinstance(value, int) and not isinstance(value, bool):
                value = float(value)
            if not isinstance(value, type(expected)):
                raise ConfigError(
                    f"'{name}.{key}' must be of type {type(expected).__name__}, got {type(value).__name__}"
                )
        values[key] = value
    return cls(**values)


def _validate(config: Config) -> Config:
    if config.provider.type not in PROVIDER_TYPES:
        raise ConfigError(
            f"Unknown provider type: {config.provider.type}. Available: {', '.join(PROVIDER_TYPES)}"
        )
    if config.scheduler.validation not in VALIDATION_MODES:
        raise ConfigError(
            f"Unknown validation mode: {config.scheduler.validation}. Available: {', '.join(VALIDATION_MODES)}"
        )
    if not 1 <= config.scheduler.priority_threshold <= 10:
        raise ConfigError("scheduler.priority_threshold must be between 1 and 10")
    if config.scheduler.max_iterations < 1:
        raise ConfigError("scheduler.max_iterations must be at least 1")
    if config.memory.max_context_length < 1:
        raise ConfigError("memory.max_context_length must be positive")
    return config


def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping at the top level")

    config = get_default_config()
    config.provider = _parse_section(ProviderConfig, data.get("provider"), "provider")
    config.memory = _parse_section(MemoryConfig, data.get("memory"), "memory")
    config.security = _parse_section(SecurityConfig, data.get("security"), "security")
    config.scheduler = _parse_section(SchedulerConfig, data.get("scheduler"), "scheduler")
    config.system = _parse_section(SystemConfig, data.get("system"), "system")

    if "tools" in data:
        tools = data["tools"]
        if not isinstance(tools, list) or not all(isinstance(t, str) for t in tools):
            raise ConfigError("'tools' must be a list of tool names")
        config.tools = tools

    if "log_level" in data:
        config.log_level = str(data["log_level"]).upper()

    return config


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(config: Config, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Apply environment variable overrides on top of file/default settings.

    Args:
        config: Configuration to update in place
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        The same config, for chaining

    Raises:
        ConfigError: If a numeric variable cannot be parsed
    """
    env = os.environ if environ is None else environ

    try:
        if env.get("FOREMAN_PROVIDER"):
            config.provider.type = env["FOREMAN_PROVIDER"].strip().lower()
        if env.get("DEFAULT_MODEL"):
            config.provider.model = env["DEFAULT_MODEL"]
        if config.provider.type == "ollama" and env.get("OLLAMA_BASE_URL"):
            config.provider.base_url = env["OLLAMA_BASE_URL"]
        if config.provider.type == "openai" and env.get("OPENAI_BASE_URL"):
            config.provider.base_url = env["OPENAI_BASE_URL"]
        if env.get("MAX_TOKENS"):
            config.provider.max_tokens = int(env["MAX_TOKENS"])
        if env.get("TEMPERATURE"):
            config.provider.temperature = float(env["TEMPERATURE"])
        if env.get("MAX_CONTEXT_LENGTH"):
            config.memory.max_context_length = int(env["MAX_CONTEXT_LENGTH"])
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment override: {e}") from e

    if env.get("FOREMAN_PERSISTENT_MEMORY"):
        config.memory.persistent = _parse_bool(env["FOREMAN_PERSISTENT_MEMORY"])
    if env.get("MEMORY_FILE"):
        config.memory.file = env["MEMORY_FILE"]
    if env.get("ALLOWED_DIRECTORIES"):
        config.security.allowed_directories = _split_list(env["ALLOWED_DIRECTORIES"])
    if env.get("BLOCKED_COMMANDS"):
        config.security.blocked_commands = _split_list(env["BLOCKED_COMMANDS"])
    if env.get("FOREMAN_AUTO_APPROVE"):
        config.security.auto_approve_dangerous = _parse_bool(env["FOREMAN_AUTO_APPROVE"])
    if env.get("FOREMAN_LOG_LEVEL"):
        config.log_level = env["FOREMAN_LOG_LEVEL"].upper()
    if env.get("FOREMAN_SYSTEM_PROMPT_FILE"):
        config.system.prompt_file = env["FOREMAN_SYSTEM_PROMPT_FILE"]

    return config


def _default_paths() -> list[Path]:
    return [
        DEFAULT_CONFIG_DIR / "config.yaml",
        DEFAULT_CONFIG_DIR / "config.yml",
        Path("./foreman.yaml"),
        Path("./foreman.yml"),
    ]


def load_config(path: Optional[Path] = None, use_env: bool = True) -> Config:
    """
    Load configuration from a YAML file plus environment overrides.

    Args:
        path: Path to config file. If None, tries default locations:
              1. ~/.foreman/config.yaml (or .yml)
              2. ./foreman.yaml (or .yml)
              3. Falls back to defaults
        use_env: Whether to apply .env / environment overrides

    Returns:
        Validated configuration

    Raises:
        ConfigError: If an explicit path is missing or any file is invalid
    """
    if path:
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        config = load_config_from_file(path)
    else:
        config_path = get_config_path()
        config = load_config_from_file(config_path) if config_path else get_default_config()

    if use_env:
        load_dotenv()
        apply_env_overrides(config)

    return _validate(config)


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        ConfigError: If the file is missing, not valid YAML, or has bad values
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    return _validate(_parse_config(data))


def save_config(config: Config, path: Path) -> None:
    """
    Save configuration to a YAML file.

    Args:
        config: Configuration to save
        path: Output path
    """
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """
    Get the path to the active config file, if any exists.

    Returns:
        Path to config file or None if using defaults
    """
    for path in _default_paths():
        if path.exists():
            return path

    return None
