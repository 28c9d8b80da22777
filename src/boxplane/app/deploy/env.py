"""Per-box environment injected into the instance during setup."""

from __future__ import annotations

from ..boxes.models import Box


def build_box_env(box: Box, *, box_api_url: str, app_env: str = 'prod') -> dict[str, str]:
    """Owner-supplied variables plus the keys the box agent needs.

    Workflow keys win over owner keys (owners cannot set reserved names).
    """
    env = {key: str(value) for key, value in box.env_vars.items()}
    env.update(
        {
            'APP_ENV': app_env,
            'BOX_ID': box.id,
            'BOX_SUBDOMAIN': box.subdomain,
            'BOX_API_URL': box_api_url,
            'BOX_AGENT_SECRET': box.agent_secret,
        }
    )
    return env
