"""Skill source resolution and the install command run inside a box.

A skill id resolves to the repository it is installed from. Two catalogs:

  - ``StaticSkillCatalog``: a fixed mapping, plus ids that already carry
    their source (``owner/repo/skill``);
  - ``HttpSkillCatalog``: a skills directory API returning
    ``{"skills": [{"id": ..., "topSource": ...}]}``.

An id that resolves to nothing fails its own install node only.
"""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Protocol

import httpx

from ..providers.http_base import _get_shared_async_client

logger = logging.getLogger(__name__)

_CATALOG_TTL_SECONDS = 300.0
_CATALOG_LIMIT = 100


@dataclass(frozen=True, slots=True)
class SkillSource:
    skill_id: str
    source: str
    """``owner/repo`` on GitHub."""
    skill_name: str

    @property
    def repo_url(self) -> str:
        return f'https://github.com/{self.source}'


class SkillCatalog(Protocol):
    async def resolve(self, skill_ids: Iterable[str]) -> dict[str, SkillSource | None]: ...


def split_qualified_id(skill_id: str) -> SkillSource | None:
    """``owner/repo/skill`` carries its own source; anything else does not."""
    parts = skill_id.split('/')
    if len(parts) != 3 or not all(parts):
        return None
    return SkillSource(skill_id=skill_id, source=f'{parts[0]}/{parts[1]}', skill_name=parts[2])


def install_command(skill: SkillSource) -> str:
    # ``echo ""`` answers any prompt the CLI still raises despite --yes.
    return (
        'cd /home/box && echo "" | npx --yes skills add '
        f'{shlex.quote(skill.repo_url)} --skill {shlex.quote(skill.skill_name)} '
        '--yes --global'
    )


class StaticSkillCatalog:
    """Resolves from a fixed ``skill_id -> owner/repo`` mapping."""

    def __init__(self, sources: Mapping[str, str] | None = None) -> None:
        self._sources = dict(sources or {})

    async def resolve(self, skill_ids: Iterable[str]) -> dict[str, SkillSource | None]:
        result: dict[str, SkillSource | None] = {}
        for skill_id in skill_ids:
            source = self._sources.get(skill_id)
            if source:
                result[skill_id] = SkillSource(skill_id, source, skill_id)
            else:
                result[skill_id] = split_qualified_id(skill_id)
        return result


class HttpSkillCatalog:
    """Resolves against a skills directory API, caching the listing briefly.

    A failed listing is logged and treated as "nothing resolved"; the
    install nodes then fail individually.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        ttl_seconds: float = _CATALOG_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self._client = http_client
        self._timeout = timeout_seconds
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[str, str] | None = None
        self._cached_at = 0.0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return _get_shared_async_client()

    async def _listing(self) -> dict[str, str]:
        now = self._clock()
        if self._cache is not None and now - self._cached_at < self._ttl:
            return self._cache
        try:
            resp = await self._get_client().get(
                f'{self.base_url}/api/skills',
                params={'limit': _CATALOG_LIMIT},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning('Skill catalog listing failed: %s', exc)
            return {}
        listing = {
            str(item['id']): str(item['topSource'])
            for item in payload.get('skills', [])
            if item.get('id') and item.get('topSource')
        }
        self._cache = listing
        self._cached_at = now
        return listing

    async def resolve(self, skill_ids: Iterable[str]) -> dict[str, SkillSource | None]:
        ids = list(skill_ids)
        listing = await self._listing()
        result: dict[str, SkillSource | None] = {}
        for skill_id in ids:
            source = listing.get(skill_id)
            if source:
                result[skill_id] = SkillSource(skill_id, source, skill_id)
            else:
                result[skill_id] = split_qualified_id(skill_id)
                if result[skill_id] is None:
                    logger.warning('Skill %s not found in catalog', skill_id)
        logger.info(
            'Resolved %d/%d skill sources',
            sum(1 for s in result.values() if s is not None), len(ids),
        )
        return result
