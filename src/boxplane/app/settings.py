"""Box control plane configuration settings.

BoxPlaneSettings is the single configuration object accepted by create_app()
and build_runtime(). It is a plain dataclass (not env-coupled) so tests can
inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

PROVIDER_TYPES = frozenset({"sprites", "docker", "coolify", "inmemory"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_tuple(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True, slots=True)
class BoxPlaneSettings:
    """Configuration for the box control plane.

    All fields have sensible defaults for local development.
    Non-local environments must supply Supabase credentials and the
    credentials of the selected compute provider.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    server_url: str = "http://localhost:8000"
    """Public URL of this control plane; boxes call back to ``{server_url}/box``."""

    # ── Supabase ───────────────────────────────────────────────────
    supabase_url: str = ""
    """Supabase project URL (e.g. https://xyz.supabase.co)."""

    supabase_service_role_key: str = ""
    """Supabase service-role key for PostgREST calls. Never log this."""

    # ── Compute provider ───────────────────────────────────────────
    default_provider: str = "inmemory"
    """Backend used for every box: sprites, docker, coolify, or inmemory."""

    sprites_bearer_token: str = ""
    """Static bearer token for the Sprites fleet API."""

    sprites_base_url: str = "https://api.sprites.dev"

    docker_socket_path: str = "/var/run/docker.sock"
    docker_image: str = "ghcr.io/boxplane/box-runtime:latest"
    docker_network: str = ""
    """Optional network the box containers join (for the reverse proxy)."""

    coolify_api_url: str = ""
    coolify_api_token: str = ""
    coolify_project_uuid: str = ""
    coolify_server_uuid: str = ""
    coolify_environment_name: str = "production"
    coolify_environment_uuid: str = ""

    base_domain: str = "localhost"
    """Domain suffix under which box subdomains are routed."""

    instance_port: int = 8080
    """Port the box agent listens on inside the instance."""

    # ── Deploy workflow ────────────────────────────────────────────
    agent_binary_url: str = "https://downloads.boxplane.dev/box-agent/latest/box-agent"
    skill_catalog_url: str = ""
    """Optional HTTP catalog used to resolve a skill id to its source repo."""

    health_poll_interval_seconds: float = 5.0
    health_timeout_seconds: float = 120.0
    health_crash_loop_threshold: int = 2

    skills_require_any_success: bool = False
    """Fail the skills gate when every requested skill failed to install."""

    stale_deploy_timeout_seconds: int = 1800
    stale_sweep_schedule: str = "*/5 * * * *"

    cron_trigger_timeout_seconds: float = 300.0

    # ── CORS / logging ─────────────────────────────────────────────
    cors_origins: tuple[str, ...] = (
        "http://localhost:5173",
        "http://localhost:3000",
    )
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def box_api_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/box"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.default_provider not in PROVIDER_TYPES:
            errors.append(
                f"default_provider must be one of {sorted(PROVIDER_TYPES)}, "
                f"got {self.default_provider!r}"
            )
        if self.default_provider == "sprites" and not self.sprites_bearer_token:
            errors.append("sprites provider requires sprites_bearer_token")
        if self.default_provider == "coolify":
            for name in (
                "coolify_api_url",
                "coolify_api_token",
                "coolify_project_uuid",
                "coolify_server_uuid",
            ):
                if not getattr(self, name):
                    errors.append(f"coolify provider requires {name}")
        if self.health_poll_interval_seconds <= 0:
            errors.append("health_poll_interval_seconds must be > 0")
        if self.health_timeout_seconds < self.health_poll_interval_seconds:
            errors.append(
                "health_timeout_seconds must be >= health_poll_interval_seconds"
            )
        if self.health_crash_loop_threshold < 1:
            errors.append("health_crash_loop_threshold must be >= 1")
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f"{self.environment}: supabase_url is required")
            if not self.supabase_service_role_key:
                errors.append(
                    f"{self.environment}: supabase_service_role_key is required"
                )
            if self.default_provider == "inmemory":
                errors.append(
                    f"{self.environment}: inmemory provider is only allowed locally"
                )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> BoxPlaneSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct BoxPlaneSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        cors = _env_tuple(env.get("CORS_ORIGINS")) or defaults.cors_origins

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            server_url=env.get("SERVER_URL", defaults.server_url),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            default_provider=env.get("BOX_PROVIDER", defaults.default_provider),
            sprites_bearer_token=env.get("SPRITES_BEARER_TOKEN", ""),
            sprites_base_url=env.get("SPRITES_BASE_URL", defaults.sprites_base_url),
            docker_socket_path=env.get("DOCKER_SOCKET_PATH", defaults.docker_socket_path),
            docker_image=env.get("DOCKER_IMAGE", defaults.docker_image),
            docker_network=env.get("DOCKER_NETWORK", ""),
            coolify_api_url=env.get("COOLIFY_API_URL", ""),
            coolify_api_token=env.get("COOLIFY_API_TOKEN", ""),
            coolify_project_uuid=env.get("COOLIFY_PROJECT_UUID", ""),
            coolify_server_uuid=env.get("COOLIFY_SERVER_UUID", ""),
            coolify_environment_name=env.get(
                "COOLIFY_ENVIRONMENT_NAME", defaults.coolify_environment_name,
            ),
            coolify_environment_uuid=env.get("COOLIFY_ENVIRONMENT_UUID", ""),
            base_domain=env.get("BOX_BASE_DOMAIN", defaults.base_domain),
            instance_port=int(env.get("BOX_INSTANCE_PORT", defaults.instance_port)),
            agent_binary_url=env.get("BOX_AGENT_BINARY_URL", defaults.agent_binary_url),
            skill_catalog_url=env.get("SKILL_CATALOG_URL", ""),
            health_poll_interval_seconds=float(
                env.get("HEALTH_POLL_INTERVAL_SECONDS", defaults.health_poll_interval_seconds)
            ),
            health_timeout_seconds=float(
                env.get("HEALTH_TIMEOUT_SECONDS", defaults.health_timeout_seconds)
            ),
            health_crash_loop_threshold=int(
                env.get("HEALTH_CRASH_LOOP_THRESHOLD", defaults.health_crash_loop_threshold)
            ),
            skills_require_any_success=_env_bool(
                env.get("SKILLS_REQUIRE_ANY_SUCCESS"), defaults.skills_require_any_success,
            ),
            stale_deploy_timeout_seconds=int(
                env.get("STALE_DEPLOY_TIMEOUT_SECONDS", defaults.stale_deploy_timeout_seconds)
            ),
            stale_sweep_schedule=env.get("STALE_SWEEP_SCHEDULE", defaults.stale_sweep_schedule),
            cron_trigger_timeout_seconds=float(
                env.get("CRON_TRIGGER_TIMEOUT_SECONDS", defaults.cron_trigger_timeout_seconds)
            ),
            cors_origins=cors,
            log_level=env.get("LOG_LEVEL", defaults.log_level),
            log_json=env.get("LOG_FORMAT", "json") == "json",
        )
