"""Completion handles for asynchronously dispatched JAX work.

Every ``jax.numpy`` operation returns immediately while the device computes in
the background. Device work is ordered by data dependency, so an operation
that consumes an array always runs after the operation that produced it.

:class:`Event` makes that implicit model explicit at the host boundary: it
holds the arrays produced by a dispatched operation together with the events
that operation was declared to depend on. Waiting on an event waits on its
dependencies first, then on its own arrays, and turns a device failure into a
:class:`~newton_cg_jax.errors.DeviceError` at that point. Host code reads a
result only through :meth:`Event.result` or :meth:`Event.read`, both of which
wait first.
"""

from collections.abc import Callable, Iterable
from typing import Any

import jax

from newton_cg_jax.errors import DeviceError


class Event:
    """Handle for a pytree of arrays whose computation may still be running.

    Args:
        payload: Pytree of arrays produced by the operation (may be ``None``).
        deps: Events the operation was issued after.
    """

    __slots__ = ("_payload", "_deps", "_complete")

    def __init__(self, payload: Any = None, deps: Iterable["Event"] = ()):
        self._payload = payload
        self._deps = tuple(deps)
        self._complete = False

    @classmethod
    def merge(cls, deps: Iterable["Event"]) -> "Event":
        """An event that completes when all of ``deps`` have completed."""
        return cls(None, deps)

    @property
    def deps(self) -> tuple["Event", ...]:
        return self._deps

    @property
    def complete(self) -> bool:
        """Whether :meth:`wait` has already returned successfully."""
        return self._complete

    def wait(self) -> "Event":
        """Block until the payload and all dependencies are computed.

        Raises:
            DeviceError: If any of the underlying device computations failed.
        """
        if self._complete:
            return self
        for dep in self._deps:
            dep.wait()
        try:
            jax.block_until_ready(self._payload)
        except jax.errors.JaxRuntimeError as e:
            raise DeviceError(f"Device computation failed: {e}") from e
        self._complete = True
        # Completed dependencies no longer need to be kept alive.
        self._deps = ()
        return self

    def result(self) -> Any:
        """Wait, then return the payload as device arrays."""
        return self.wait()._payload

    def read(self) -> Any:
        """Wait, then copy the payload to the host as numpy values."""
        return jax.device_get(self.result())

    def __repr__(self) -> str:
        state = "complete" if self._complete else "pending"
        return f"Event({state}, deps={len(self._deps)})"


def wait_all(deps: Iterable[Event]) -> None:
    """Wait on every event in ``deps``."""
    for dep in deps:
        dep.wait()


def submit(op: Callable[..., Any], *args: Any, deps: Iterable[Event] = ()) -> Event:
    """Dispatch ``op(*args)`` and return its completion handle.

    The call returns as soon as JAX has enqueued the work. ``deps`` are the
    events whose arrays ``op`` consumes; they are recorded so that waiting on
    the returned event also surfaces their failures.
    """
    return Event(op(*args), deps)
