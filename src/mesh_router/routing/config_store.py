"""
Routing configuration store.

Loads the routing YAML file, validates it, compiles each service's matcher and
selector, and publishes the result as an immutable RoutingSnapshot. A reload
either publishes a complete new snapshot or raises ConfigError and leaves the
last-known-good snapshot in place; readers only ever see one or the other.
"""

import asyncio
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from mesh_router.core.exceptions import ConfigError, UnknownServiceError

from .matcher import RuleMatcher
from .models import RoutingConfig, ServiceConfig
from .selector import WeightedSelector

logger = logging.getLogger(__name__)

ReloadListener = Callable[["RoutingSnapshot"], None]


@dataclass(frozen=True)
class CompiledService:
    """A service's validated config together with its compiled routing objects."""
    name: str
    config: ServiceConfig
    matcher: RuleMatcher
    selector: WeightedSelector


@dataclass(frozen=True)
class RoutingSnapshot:
    """Immutable, versioned view of the active routing configuration."""
    generation: int
    config: RoutingConfig
    services: Mapping[str, CompiledService]
    hosts: Mapping[str, str]
    checksum: str
    source: str
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def describe(self) -> Dict[str, Any]:
        """Summary for the admin API."""
        return {
            "generation": self.generation,
            "checksum": self.checksum,
            "source": self.source,
            "loaded_at": self.loaded_at.isoformat(),
            "services": {
                name: {
                    "hosts": compiled.config.hosts,
                    "default_version": compiled.config.default_version,
                    "traffic_split": dict(compiled.config.traffic_split),
                    "rules": [rule.model_dump(mode="json") for rule in compiled.matcher.rules],
                    "versions": sorted(compiled.config.versions),
                    "failover_across_versions": compiled.config.failover_across_versions,
                    "retries": compiled.config.retries.model_dump()
                }
                for name, compiled in self.services.items()
            }
        }


def compile_config(data: Any, generation: int, source: str) -> RoutingSnapshot:
    """
    Validate raw configuration data and compile it into a snapshot.

    Raises:
        ConfigError: If the data fails validation or a traffic split is invalid
    """
    if not isinstance(data, dict):
        raise ConfigError(
            "Routing configuration must be a mapping",
            errors=[f"got {type(data).__name__}"]
        )

    try:
        config = RoutingConfig.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError(
            f"Invalid routing configuration ({len(errors)} errors)",
            errors=errors
        ) from e

    services: Dict[str, CompiledService] = {}
    hosts: Dict[str, str] = {}
    for name, service in config.services.items():
        services[name] = CompiledService(
            name=name,
            config=service,
            matcher=RuleMatcher(service.rules),
            selector=WeightedSelector(
                service.traffic_split,
                default_version=service.default_version,
                service=name
            )
        )
        for host in service.hosts:
            hosts[host] = name

    checksum = hashlib.sha256(
        config.model_dump_json().encode("utf-8")
    ).hexdigest()[:16]

    return RoutingSnapshot(
        generation=generation,
        config=config,
        services=MappingProxyType(services),
        hosts=MappingProxyType(hosts),
        checksum=checksum,
        source=source
    )


class RoutingConfigStore:
    """Owns the active routing snapshot and its reload lifecycle."""

    def __init__(self, config_path: Optional[Path] = None,
                 default_service: Optional[str] = None):
        self.config_path = config_path or Path("config/routing.yaml")
        self.default_service = default_service
        self._snapshot: Optional[RoutingSnapshot] = None
        self._generation = 0
        self._swap_lock = threading.Lock()
        self._listeners: List[ReloadListener] = []
        self._last_mtime: Optional[float] = None
        self._watch_task: Optional[asyncio.Task] = None
        self.reload_failures = 0
        self.last_error: Optional[ConfigError] = None

    @property
    def current(self) -> RoutingSnapshot:
        """The active snapshot."""
        snapshot = self._snapshot
        if snapshot is None:
            raise RuntimeError("Routing configuration not loaded")
        return snapshot

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    def add_listener(self, listener: ReloadListener) -> None:
        """Register a callback invoked with every newly published snapshot."""
        self._listeners.append(listener)

    def load(self) -> RoutingSnapshot:
        """
        Initial load from disk. Creates a default file when none exists.

        Raises:
            ConfigError: If the file is malformed or invalid
        """
        if not self.config_path.exists():
            logger.warning(f"Routing config file not found: {self.config_path}")
            logger.info("Creating default routing configuration file...")
            self._create_default_config()
        return self.reload(force=True)

    def reload(self, force: bool = False) -> RoutingSnapshot:
        """
        Re-read the configuration file and publish it if it changed.

        Raises:
            ConfigError: If the new configuration is invalid. The previous
                         snapshot stays active.
        """
        try:
            mtime = self.config_path.stat().st_mtime
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise self._reject(ConfigError(
                f"Routing config file not found: {self.config_path}",
                errors=[str(e)]
            ))
        except yaml.YAMLError as e:
            raise self._reject(ConfigError(
                f"YAML parsing error in {self.config_path}",
                errors=[str(e)]
            ))
        except (OSError, UnicodeDecodeError) as e:
            raise self._reject(ConfigError(
                f"Unable to read routing config file {self.config_path}",
                errors=[f"{type(e).__name__}: {e}"]
            ))

        self._last_mtime = mtime
        return self.apply(data or {}, source=str(self.config_path), force=force)

    def apply(self, data: Any, source: str = "inline", force: bool = False) -> RoutingSnapshot:
        """
        Validate and publish configuration data.

        Publishing is skipped when the content is unchanged unless ``force``.
        """
        try:
            candidate = compile_config(data, self._generation + 1, source)
        except ConfigError as e:
            raise self._reject(e)

        with self._swap_lock:
            previous = self._snapshot
            if not force and previous is not None and previous.checksum == candidate.checksum:
                logger.debug("Routing configuration unchanged", extra={"checksum": candidate.checksum})
                return previous
            self._generation = candidate.generation
            self._snapshot = candidate

        self.last_error = None
        logger.info(
            "Routing configuration published",
            extra={
                "generation": candidate.generation,
                "checksum": candidate.checksum,
                "source": source,
                "services": sorted(candidate.services),
                "previous_generation": previous.generation if previous else None
            }
        )

        for listener in self._listeners:
            try:
                listener(candidate)
            except Exception:
                logger.exception(
                    "Routing reload listener failed",
                    extra={"listener": getattr(listener, "__qualname__", repr(listener))}
                )

        return candidate

    def _reject(self, error: ConfigError) -> ConfigError:
        self.reload_failures += 1
        self.last_error = error
        logger.error(
            "Routing configuration rejected - keeping last-known-good",
            extra={
                "error": error.message,
                "errors": error.errors,
                "active_generation": self._snapshot.generation if self._snapshot else None
            }
        )
        return error

    def resolve_service(self, host: Optional[str]) -> CompiledService:
        """
        Pick the service that owns a request host.

        Falls back to the configured default service, then to the only
        service when exactly one is configured.

        Raises:
            UnknownServiceError: If no service claims the host
        """
        snapshot = self.current
        hostname = (host or "").split(":", 1)[0].strip().lower()

        name = snapshot.hosts.get(hostname)
        if name is None and self.default_service in snapshot.services:
            name = self.default_service
        if name is None and len(snapshot.services) == 1:
            name = next(iter(snapshot.services))
        if name is None:
            raise UnknownServiceError(f"No service configured for host '{hostname}'", host=hostname)

        return snapshot.services[name]

    async def watch(self, interval: float) -> None:
        """Poll the file's modification time and reload on change."""
        logger.info(
            "Watching routing configuration",
            extra={"path": str(self.config_path), "interval_seconds": interval}
        )
        while True:
            await asyncio.sleep(interval)
            try:
                mtime = self.config_path.stat().st_mtime
            except OSError as e:
                logger.warning(f"Routing config file unavailable: {self.config_path}: {e}")
                continue

            if mtime == self._last_mtime:
                continue
            try:
                self.reload()
            except ConfigError:
                # Already logged; retry only when the file changes again
                self._last_mtime = mtime
            except Exception:
                logger.exception("Routing config watcher error", extra={"path": str(self.config_path)})
                self._last_mtime = mtime

    def start_watching(self, interval: float) -> None:
        if interval <= 0 or self._watch_task is not None:
            return
        self._watch_task = asyncio.create_task(self.watch(interval))

    async def stop_watching(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _create_default_config(self) -> None:
        """Write the reference three-service configuration."""
        default_config = {
            'probes': {
                'interval_seconds': 10.0,
                'timeout_seconds': 2.0,
                'health_path': '/health'
            },
            'services': {
                'nginx-frontend': {
                    'hosts': ['nginx-frontend.local'],
                    'default_version': 'v1',
                    'traffic_split': {'v1': 80, 'v2': 20},
                    'rules': [
                        {'name': 'version-header-v2', 'match': {'type': 'header', 'name': 'version', 'value': 'v2'}, 'version': 'v2'},
                        {'name': 'version-header-v1', 'match': {'type': 'header', 'name': 'version', 'value': 'v1'}, 'version': 'v1'},
                        {'name': 'v2-path', 'match': {'type': 'path_prefix', 'prefix': '/v2'}, 'version': 'v2'},
                        {'name': 'beta-path', 'match': {'type': 'path_prefix', 'prefix': '/beta'}, 'version': 'v2'}
                    ],
                    'versions': {
                        'v1': {'endpoints': ['http://127.0.0.1:9001'], 'load_balancer': 'round_robin'},
                        'v2': {'endpoints': ['http://127.0.0.1:9002'], 'load_balancer': 'round_robin'}
                    }
                },
                'nginx-api': {
                    'hosts': ['nginx-api.local'],
                    'default_version': 'v1',
                    'versions': {
                        'v1': {'endpoints': ['http://127.0.0.1:9011'], 'load_balancer': 'least_connections'}
                    }
                },
                'nginx-admin': {
                    'hosts': ['nginx-admin.local'],
                    'default_version': 'v1',
                    'versions': {
                        'v1': {'endpoints': ['http://127.0.0.1:9021']}
                    }
                }
            }
        }

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(default_config, f, default_flow_style=False, indent=2, sort_keys=False)

        logger.info(f"Created default routing configuration at {self.config_path}")
