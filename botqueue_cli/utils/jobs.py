"""Job system lifecycle helpers for CLI commands"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from botqueue.config.settings import settings
from botqueue.v1.infra.jobs.service import JobSystem

T = TypeVar("T")


def build_job_system() -> JobSystem:
    return JobSystem.from_settings(settings)


@asynccontextmanager
async def open_job_system() -> AsyncIterator[JobSystem]:
    """Start a job system for the duration of one command"""
    system = build_job_system()
    await system.startup()
    try:
        yield system
    finally:
        await system.close()


def run_with_job_system(operation: Callable[[JobSystem], Awaitable[T]]) -> T:
    """Run ``operation`` against a freshly started job system"""

    async def runner() -> T:
        async with open_job_system() as system:
            return await operation(system)

    return asyncio.run(runner())
