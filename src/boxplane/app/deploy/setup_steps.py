"""Setup steps run between CreateInstance and HealthCheck.

Each step is one small idempotent action; the flow builder chains them in
order, so a step may assume every earlier one succeeded.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from ..errors import ProviderError
from ..providers.base import ComputeProvider, InstanceHandle

AGENT_DIR = '/opt/box-agent'
AGENT_BINARY = f'{AGENT_DIR}/box-agent'
BOX_DIRECTORIES = (
    '/home/box/workspace',
    '/home/box/.config/box',
    '/home/box/logs',
)


@dataclass(frozen=True, slots=True)
class SetupContext:
    provider: ComputeProvider
    handle: InstanceHandle
    env: Mapping[str, str]
    agent_binary_url: str


SetupAction = Callable[[SetupContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True, slots=True)
class SetupStep:
    name: str
    label: str
    action: SetupAction
    requires_exec: bool = True


async def _run_checked(ctx: SetupContext, label: str, script: str) -> dict[str, Any]:
    result = await ctx.provider.exec_command(ctx.handle, script)
    if not result.ok:
        raise ProviderError(
            f'{label} exited with {result.exit_code}: '
            f'{(result.stderr or result.stdout).strip()[:500]}',
            provider=ctx.provider.name,
            operation='exec_command',
        )
    return {'exit_code': result.exit_code}


async def install_agent(ctx: SetupContext) -> dict[str, Any]:
    url = shlex.quote(ctx.agent_binary_url)
    script = '\n'.join(
        [
            'set -eu',
            f'if [ -x {AGENT_BINARY} ]; then echo "box-agent present"; exit 0; fi',
            f'mkdir -p {AGENT_DIR}',
            f'curl -fsSL {url} -o {AGENT_BINARY}.tmp',
            f'chmod +x {AGENT_BINARY}.tmp',
            f'mv {AGENT_BINARY}.tmp {AGENT_BINARY}',
        ]
    )
    return await _run_checked(ctx, 'install agent', script)


async def create_directories(ctx: SetupContext) -> dict[str, Any]:
    dirs = ' '.join(shlex.quote(d) for d in BOX_DIRECTORIES)
    result = await _run_checked(ctx, 'create directories', f'mkdir -p {dirs}')
    return {**result, 'directories': list(BOX_DIRECTORIES)}


async def write_env(ctx: SetupContext) -> dict[str, Any]:
    await ctx.provider.update_env(ctx.handle, ctx.env)
    # Values can be secrets; record only the keys.
    return {'env_keys': sorted(ctx.env)}


DEFAULT_SETUP_STEPS: tuple[SetupStep, ...] = (
    SetupStep('install-agent', 'Install box agent', install_agent),
    SetupStep('create-dirs', 'Create working directories', create_directories),
    SetupStep('write-env', 'Inject environment', write_env, requires_exec=False),
)


def setup_steps_by_name(steps: tuple[SetupStep, ...] = DEFAULT_SETUP_STEPS) -> dict[str, SetupStep]:
    return {step.name: step for step in steps}
