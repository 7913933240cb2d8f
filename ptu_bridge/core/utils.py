"""Core utility functions shared across modules."""

from __future__ import annotations

import asyncio
import importlib
from typing import Any, Awaitable, Callable, Optional


class ProtocolLoadError(RuntimeError):
    """Raised when a configured driver factory cannot be imported."""


async def invoke_callback(
    callback: Optional[Callable[..., Awaitable[None] | None]], *args: Any
) -> None:
    """Call a sync or async callback and await the result when needed."""
    if callback is None:
        return
    result = callback(*args)
    if asyncio.iscoroutine(result):
        await result


def load_factory(path: str) -> Callable[..., Any]:
    """Resolve a ``"package.module:attribute"`` reference to a callable.

    Args:
        path: Dotted module path and attribute separated by a colon.

    Raises:
        ProtocolLoadError: If the module cannot be imported or the attribute
            does not exist or is not callable.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ProtocolLoadError(
            f"Invalid factory reference {path!r}; expected 'module:attribute'"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ProtocolLoadError(f"Cannot import {module_name!r}: {exc}") from exc

    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ProtocolLoadError(
                f"{module_name!r} has no attribute {attribute!r}"
            ) from exc

    if not callable(target):
        raise ProtocolLoadError(f"{path!r} is not callable")
    return target
