"""Configuration management module.

This module handles two kinds of configuration:
- The fleet file (YAML): machines, services and their dependencies
- Tool settings (TOML at ~/.swarmlab/config.toml): retry policy, timeouts,
  parallelism, health budgets, defaults for the CLI

Security:
- Config and token file permissions: 0600 (owner read/write only)
- yaml.safe_load only
- Atomic writes via temp file + rename
"""

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for newer Python versions
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomlkit
except ImportError as e:
    raise ImportError("tomlkit library not available. Install with: pip install tomlkit") from e

from swarmlab.models import (
    DEFAULT_STARTUP_PRIORITY,
    MACHINE_ID_LABEL,
    MACHINE_ROLE_LABEL,
    FleetSpec,
    HealthCheckSpec,
    MachineRole,
    MachineSpec,
    ServicePhase,
    ServiceSpec,
    parse_label,
)
from swarmlab.retry_handler import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_FLEET_FILE = "homelab.yaml"


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


class FleetLoader:
    """Parse the fleet file into a FleetSpec.

    Example fleet file:

        machines:
          pi-manager: {host: 192.168.1.10, user: pi, role: manager}
          pi-worker-1:
            host: 192.168.1.11
            user: pi
            labels: [storage=ssd]
        services:
          traefik: {phase: infrastructure, stack_file: stacks/traefik.yml}
          nextcloud:
            depends_on: [traefik, postgres]
            health_check: {enabled: true, endpoint: /status.php}
    """

    @classmethod
    def load(cls, path: str | Path) -> FleetSpec:
        """Load and validate a fleet file.

        Args:
            path: Path to the fleet YAML file

        Returns:
            FleetSpec

        Raises:
            ConfigError: If the file is missing, unparsable or invalid
        """
        fleet_path = Path(path).expanduser()
        if not fleet_path.exists():
            raise ConfigError(f"Fleet file not found: {fleet_path}")

        try:
            with open(fleet_path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {fleet_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read fleet file: {e}") from e

        fleet = cls.from_dict(data, base_dir=fleet_path.parent.resolve())
        fleet.source = fleet_path.resolve()
        logger.debug(
            f"Loaded fleet from {fleet_path}: {len(fleet.machines)} machines, "
            f"{len(fleet.services)} services"
        )
        return fleet

    @classmethod
    def from_dict(cls, data: Any, base_dir: Path | None = None) -> FleetSpec:
        """Build a FleetSpec from parsed YAML.

        Raises:
            ConfigError: If the document is malformed
        """
        if not isinstance(data, dict):
            raise ConfigError("Fleet file must be a mapping with 'machines' and 'services'")

        machines_data = data.get("machines") or {}
        services_data = data.get("services") or {}
        if not isinstance(machines_data, dict):
            raise ConfigError("'machines' must be a mapping of id -> machine")
        if not isinstance(services_data, dict):
            raise ConfigError("'services' must be a mapping of name -> service")

        identity_labels = bool(data.get("identity_labels", True))
        machines = cls._parse_machines(machines_data, identity_labels)

        services = {}
        for name, service_data in services_data.items():
            service = cls._parse_service(str(name), service_data, base_dir)
            if service is not None:
                services[service.name] = service

        return FleetSpec(machines=machines, services=services)

    @classmethod
    def _parse_machines(
        cls, machines_data: dict[str, Any], identity_labels: bool
    ) -> dict[str, MachineSpec]:
        if not machines_data:
            return {}

        # With no declared roles, the first machine manages the swarm
        any_role = any(
            isinstance(m, dict) and m.get("role") for m in machines_data.values()
        )

        machines: dict[str, MachineSpec] = {}
        for index, (machine_id, entry) in enumerate(machines_data.items()):
            machine_id = str(machine_id)
            if not isinstance(entry, dict):
                raise ConfigError(f"Machine '{machine_id}' must be a mapping")

            host = entry.get("host") or entry.get("ip")
            if not host:
                raise ConfigError(f"Machine '{machine_id}' has no host/ip")
            user = entry.get("user") or entry.get("ssh_user") or "root"

            if any_role:
                role_value = str(entry.get("role", MachineRole.WORKER.value)).lower()
            else:
                role_value = MachineRole.MANAGER.value if index == 0 else MachineRole.WORKER.value
            try:
                role = MachineRole(role_value)
            except ValueError as e:
                raise ConfigError(
                    f"Machine '{machine_id}' has invalid role '{role_value}'. "
                    "Expected 'manager' or 'worker'"
                ) from e

            labels = cls._parse_labels(machine_id, entry.get("labels"))
            if identity_labels:
                labels[MACHINE_ID_LABEL] = machine_id
                labels[MACHINE_ROLE_LABEL] = role.value

            machines[machine_id] = MachineSpec(
                id=machine_id,
                host=str(host),
                ssh_user=str(user),
                role=role,
                labels=frozenset(f"{k}={v}" for k, v in labels.items()),
            )

        managers = [m.id for m in machines.values() if m.is_manager]
        if len(managers) != 1:
            raise ConfigError(
                f"Fleet must declare exactly one manager, found {len(managers)}: "
                f"{', '.join(managers) or 'none'}"
            )
        return machines

    @staticmethod
    def _parse_labels(machine_id: str, raw: Any) -> dict[str, str]:
        if raw is None:
            return {}
        if isinstance(raw, dict):
            return {str(k): "" if v is None else str(v) for k, v in raw.items()}
        if not isinstance(raw, list):
            raise ConfigError(f"Labels of machine '{machine_id}' must be a list or mapping")

        labels = {}
        for label in raw:
            try:
                key, value = parse_label(str(label))
            except ValueError as e:
                raise ConfigError(f"Machine '{machine_id}': {e}") from e
            labels[key] = value
        return labels

    @classmethod
    def _parse_service(
        cls, name: str, entry: Any, base_dir: Path | None
    ) -> ServiceSpec | None:
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise ConfigError(f"Service '{name}' must be a mapping")
        if entry.get("enabled", True) is False:
            logger.debug(f"Skipping disabled service: {name}")
            return None

        depends_on = entry.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list):
            raise ConfigError(f"Service '{name}': depends_on must be a list")

        priority = entry.get("startup_priority", DEFAULT_STARTUP_PRIORITY)
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ConfigError(f"Service '{name}': startup_priority must be an integer")

        phase_value = str(entry.get("phase", ServicePhase.APPLICATIONS.value)).lower()
        try:
            phase = ServicePhase(phase_value)
        except ValueError as e:
            valid = ", ".join(p.value for p in ServicePhase.ordered())
            raise ConfigError(f"Service '{name}': invalid phase '{phase_value}' ({valid})") from e

        stack_file = None
        raw_stack = entry.get("stack_file") or entry.get("compose_file")
        if raw_stack:
            stack_file = Path(str(raw_stack)).expanduser()
            if not stack_file.is_absolute() and base_dir is not None:
                stack_file = base_dir / stack_file

        port = entry.get("port")
        if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
            raise ConfigError(f"Service '{name}': port must be an integer")
        domain = entry.get("domain")

        placement = None
        deploy = entry.get("deploy")
        if isinstance(deploy, dict):
            placement = deploy.get("placement") or deploy.get("node")
        elif deploy is not None:
            placement = str(deploy)

        return ServiceSpec(
            name=name,
            depends_on=frozenset(str(d) for d in depends_on),
            startup_priority=priority,
            health_check=cls._parse_health_check(name, entry.get("health_check"), domain, port),
            phase=phase,
            stack_file=stack_file,
            placement=str(placement) if placement else None,
            domain=str(domain) if domain else None,
            port=port,
        )

    @staticmethod
    def _parse_health_check(
        name: str, raw: Any, domain: str | None, port: int | None
    ) -> HealthCheckSpec:
        if raw is None:
            return HealthCheckSpec()
        if not isinstance(raw, dict):
            raise ConfigError(f"Service '{name}': health_check must be a mapping")

        endpoint = str(raw.get("endpoint", "/health"))
        if not endpoint.startswith(("http://", "https://")):
            host = domain or "localhost"
            authority = f"{host}:{port}" if port else host
            endpoint = f"http://{authority}/{endpoint.lstrip('/')}"

        timeout = raw.get("timeout", 30)
        if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout < 1:
            raise ConfigError(f"Service '{name}': health_check.timeout must be a positive integer")

        return HealthCheckSpec(
            enabled=bool(raw.get("enabled", True)),
            endpoint=endpoint,
            timeout_seconds=timeout,
        )


@dataclass
class SwarmlabConfig:
    """Swarmlab tool settings."""

    fleet_file: str | None = None
    max_attempts: int = 5
    retry_delay: float = 10.0
    exponential_backoff: bool = False
    max_delay: float = 120.0
    apply_timeout: int = 120
    validate_timeout: int = 60
    settle_delay: float = 3.0
    max_parallel: int = 4
    health_interval: float = 5.0
    health_budget: float = 300.0
    network_name: str = "traefik-public"
    ssh_key_path: str | None = None
    default_ssh_user: str | None = None
    token_file: str | None = None
    docker_host: str | None = None
    env_file: str | None = None
    preflight_checks: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SwarmlabConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**known)

    def retry_policy(self) -> RetryPolicy:
        """Build the deployment retry policy from these settings.

        Raises:
            ConfigError: If the values are out of range
        """
        try:
            return RetryPolicy(
                max_attempts=int(self.max_attempts),
                backoff=float(self.retry_delay),
                exponential=bool(self.exponential_backoff),
                max_delay=float(self.max_delay),
                timeout=int(self.apply_timeout),
                validate_timeout=int(self.validate_timeout),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid retry settings: {e}") from e

    def validate(self) -> None:
        """Check every numeric setting a run depends on.

        Raises:
            ConfigError: If a value is out of range
        """
        self.retry_policy()
        try:
            checks = [
                (float(self.health_interval) > 0, "health_interval must be > 0"),
                (float(self.health_budget) >= 0, "health_budget must be >= 0"),
                (float(self.settle_delay) >= 0, "settle_delay must be >= 0"),
                (int(self.max_parallel) >= 1, "max_parallel must be >= 1"),
            ]
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings: {e}") from e
        for ok, message in checks:
            if not ok:
                raise ConfigError(f"Invalid settings: {message}")


class ConfigManager:
    """Manage swarmlab settings and the cached join token.

    Configuration is stored at ~/.swarmlab/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".swarmlab"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"
    DEFAULT_TOKEN_FILE = DEFAULT_CONFIG_DIR / "swarm_token"

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path."""
        if custom_path:
            return Path(custom_path).expanduser().resolve()
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def ensure_config_dir(cls) -> Path:
        """Ensure config directory exists with secure permissions.

        Raises:
            ConfigError: If directory creation fails
        """
        try:
            cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            os.chmod(cls.DEFAULT_CONFIG_DIR, 0o700)
            return cls.DEFAULT_CONFIG_DIR
        except OSError as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> SwarmlabConfig:
        """Load settings from file, defaults if the file does not exist.

        Raises:
            ConfigError: If loading fails
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return SwarmlabConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)  # type: ignore[attr-defined]

            logger.debug(f"Loaded config from: {config_path}")
            return SwarmlabConfig.from_dict(data)

        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: SwarmlabConfig, custom_path: str | None = None) -> None:
        """Save settings, preserving comments in an existing file.

        Raises:
            ConfigError: If saving fails
        """
        temp_path: Path | None = None
        try:
            if custom_path:
                config_path = cls.get_config_path(custom_path)
                config_path.parent.mkdir(parents=True, exist_ok=True)
            else:
                cls.ensure_config_dir()
                config_path = cls.DEFAULT_CONFIG_FILE

            temp_path = config_path.with_suffix(".tmp")

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()
            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)
            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")

        except Exception as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> SwarmlabConfig:
        """Update configuration values.

        Raises:
            ConfigError: If a key is unknown or the update fails
        """
        config = cls.load_config(custom_path)

        for key, value in updates.items():
            if key not in SwarmlabConfig.__dataclass_fields__:
                raise ConfigError(f"Unknown config key: {key}")
            setattr(config, key, value)

        # Reject settings that would break the next deploy
        config.validate()

        cls.save_config(config, custom_path)
        return config

    @classmethod
    def resolve_fleet_file(cls, cli_value: str | None, config: SwarmlabConfig) -> Path:
        """Fleet file with CLI override, then settings, then ./homelab.yaml."""
        if cli_value:
            return Path(cli_value).expanduser()
        if config.fleet_file:
            return Path(config.fleet_file).expanduser()
        return Path(DEFAULT_FLEET_FILE)

    @classmethod
    def _token_path(cls, token_file: str | None) -> Path:
        if token_file:
            return Path(token_file).expanduser()
        return cls.DEFAULT_TOKEN_FILE

    @classmethod
    def save_join_token(cls, token: str, token_file: str | None = None) -> Path:
        """Persist the worker join token with 0600 permissions.

        Raises:
            ConfigError: If writing fails
        """
        path = cls._token_path(token_file)
        temp_path = path.with_suffix(".tmp")
        try:
            if token_file is None:
                cls.ensure_config_dir()
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(token.strip() + "\n")
            os.chmod(temp_path, 0o600)
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save join token: {e}") from e

        logger.debug(f"Saved join token to: {path}")
        return path

    @classmethod
    def load_join_token(cls, token_file: str | None = None) -> str | None:
        """Read the cached join token, None if absent."""
        path = cls._token_path(token_file)
        if not path.exists():
            return None
        try:
            token = path.read_text().strip()
        except OSError as e:
            raise ConfigError(f"Failed to read join token: {e}") from e
        return token or None

    @classmethod
    def load_env(cls, config: SwarmlabConfig, fleet_path: Path | None = None) -> dict[str, str]:
        """Variables for `docker stack config/deploy` from a dotenv file.

        Uses the configured env_file, else a .env beside the fleet file.
        No file means no extra variables.

        Raises:
            ConfigError: If the configured env_file does not exist
        """
        if config.env_file:
            path = Path(config.env_file).expanduser()
            if not path.is_file():
                raise ConfigError(f"Env file not found: {path}")
        elif fleet_path is not None and (fleet_path.parent / ".env").is_file():
            path = fleet_path.parent / ".env"
        else:
            return {}

        # Keys without a value ("FOO" alone) carry nothing to export
        env = {key: value for key, value in dotenv_values(path).items() if value is not None}
        logger.debug(f"Loaded {len(env)} variables from {path}")
        return env


__all__ = [
    "ConfigError",
    "ConfigManager",
    "DEFAULT_FLEET_FILE",
    "FleetLoader",
    "SwarmlabConfig",
]
