"""Skill catalog resolution and install command tests."""

from __future__ import annotations

import httpx
import pytest

from boxplane.app.deploy.skills import (
    HttpSkillCatalog,
    SkillSource,
    StaticSkillCatalog,
    install_command,
    split_qualified_id,
)


class TestQualifiedIds:
    def test_owner_repo_skill(self):
        source = split_qualified_id('acme/tools/web-search')
        assert source == SkillSource('acme/tools/web-search', 'acme/tools', 'web-search')
        assert source.repo_url == 'https://github.com/acme/tools'

    @pytest.mark.parametrize('skill_id', ['web-search', 'acme/tools', 'a//b', 'a/b/c/d'])
    def test_unqualified_ids(self, skill_id):
        assert split_qualified_id(skill_id) is None


class TestInstallCommand:
    def test_command_shape(self):
        cmd = install_command(SkillSource('pdf', 'acme/skills', 'pdf'))
        assert cmd == (
            'cd /home/box && echo "" | npx --yes skills add '
            'https://github.com/acme/skills --skill pdf --yes --global'
        )

    def test_skill_name_is_quoted(self):
        cmd = install_command(SkillSource('x', 'acme/skills', 'x; rm -rf /'))
        assert "'x; rm -rf /'" in cmd


class TestStaticCatalog:
    @pytest.mark.asyncio
    async def test_mapping_then_qualified_then_none(self):
        catalog = StaticSkillCatalog({'pdf': 'acme/skills'})
        resolved = await catalog.resolve(['pdf', 'org/repo/lint', 'missing'])
        assert resolved['pdf'] == SkillSource('pdf', 'acme/skills', 'pdf')
        assert resolved['org/repo/lint'].source == 'org/repo'
        assert resolved['missing'] is None


def _catalog_transport(payload, calls, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)


class TestHttpCatalog:
    @pytest.mark.asyncio
    async def test_resolves_from_listing(self):
        calls = []
        payload = {'skills': [{'id': 'pdf', 'topSource': 'acme/skills'}, {'id': 'bad'}]}
        async with httpx.AsyncClient(transport=_catalog_transport(payload, calls)) as client:
            catalog = HttpSkillCatalog('https://skills.example/', http_client=client)
            resolved = await catalog.resolve(['pdf', 'bad', 'org/repo/lint'])

        assert resolved['pdf'].source == 'acme/skills'
        assert resolved['bad'] is None
        assert resolved['org/repo/lint'].skill_name == 'lint'
        assert str(calls[0].url) == 'https://skills.example/api/skills?limit=100'

    @pytest.mark.asyncio
    async def test_listing_is_cached(self):
        calls = []
        now = [0.0]
        payload = {'skills': [{'id': 'pdf', 'topSource': 'acme/skills'}]}
        async with httpx.AsyncClient(transport=_catalog_transport(payload, calls)) as client:
            catalog = HttpSkillCatalog(
                'https://skills.example', http_client=client, ttl_seconds=60,
                clock=lambda: now[0],
            )
            await catalog.resolve(['pdf'])
            now[0] = 30.0
            await catalog.resolve(['pdf'])
            assert len(calls) == 1
            now[0] = 61.0
            await catalog.resolve(['pdf'])
            assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_listing_failure_resolves_nothing(self):
        calls = []
        transport = _catalog_transport({'error': 'down'}, calls, status=503)
        async with httpx.AsyncClient(transport=transport) as client:
            catalog = HttpSkillCatalog('https://skills.example', http_client=client)
            resolved = await catalog.resolve(['pdf', 'org/repo/lint'])
        assert resolved['pdf'] is None
        # Qualified ids still carry their own source.
        assert resolved['org/repo/lint'] is not None
