"""Pluggable call-outs executed by ``integration`` nodes."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

IntegrationHandler = Callable[
    [Mapping[str, Any], Mapping[str, Any]], Union[Any, Awaitable[Any]]
]


class IntegrationRegistry:
    """Maps an integration node's ``service`` name to a handler.

    Handlers receive the node ``params`` (already interpolated) and a read-only
    view of the session variables, and return the value stored in the node's
    ``result_variable``. Both plain functions and coroutines are accepted.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, IntegrationHandler] = {}

    def register(self, service: str, handler: IntegrationHandler) -> None:
        self._handlers[service] = handler

    def handler(self, service: str) -> Callable[[IntegrationHandler], IntegrationHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: IntegrationHandler) -> IntegrationHandler:
            self.register(service, func)
            return func

        return decorator

    def get(self, service: Optional[str]) -> Optional[IntegrationHandler]:
        if service is None:
            return None
        return self._handlers.get(service)

    def __contains__(self, service: str) -> bool:
        return service in self._handlers

    async def call(
        self,
        service: str,
        params: Mapping[str, Any],
        variables: Mapping[str, Any],
    ) -> Any:
        handler = self._handlers[service]
        result = handler(params, variables)
        if inspect.isawaitable(result):
            result = await result
        return result
