"""Discord command telemetry decorator."""
from __future__ import annotations

import functools
import time
from typing import Any, Callable

from discord.ext import commands

from .telemetry import get_telemetry


def track_command(func: Callable) -> Callable:
    """Decorator to track prefix command usage and performance."""

    @functools.wraps(func)
    async def wrapper(ctx: commands.Context, *args, **kwargs) -> Any:
        telemetry = get_telemetry()
        command_name = func.__name__
        user_id = str(ctx.author.id)
        guild_id = str(ctx.guild.id) if ctx.guild else "dm"
        start_time = time.time()
        success = False

        try:
            result = await func(ctx, *args, **kwargs)
            success = True
            return result

        except Exception as e:
            telemetry.track_error(
                type(e).__name__,
                command=command_name,
                error_details=str(e),
            )
            raise

        finally:
            duration_ms = (time.time() - start_time) * 1000
            telemetry.track_command(
                command_name,
                user_id,
                guild_id,
                success=success,
                duration_ms=duration_ms,
            )

    return wrapper
