"""
ENDPOINT RESOLVER
=================

The provider serves the same data under different path shapes depending on
symbol/category. For an operation ("stock_details") we try each candidate
template in order and remember the first one that answers with data.

- Bindings are memoized per operation
- Failed discovery is never cached (next call probes again)
- A bound template answering NOT_FOUND is dropped so the next call
  re-discovers
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

from utils.logger import get_logger

from .errors import ErrorClass, MarketDataError

logger = get_logger("ENDPOINT_RESOLVER")


@dataclass
class EndpointBinding:
    """Template confirmed for an operation"""
    operation_key: str
    template: str
    confirmed_at: float


def render_template(template: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Substitute {placeholders} with URL-quoted values

        render_template("/stock/{symbol}", {"symbol": "M&M"}) == "/stock/M%26M"
    """
    values = {k: quote(str(v), safe="") for k, v in (params or {}).items()}
    try:
        return template.format(**values)
    except (KeyError, IndexError) as e:
        raise ValueError(f"Missing parameter {e} for template {template}") from None


def _is_empty(result: Any) -> bool:
    if result is None:
        return True
    if isinstance(result, (dict, list, tuple, str)) and len(result) == 0:
        return True
    return False


class EndpointResolver:
    """
    Memoized endpoint discovery

    Usage:
        resolver = EndpointResolver()

        data = resolver.fetch(
            "stock_details",
            ["/stock/{symbol}", "/stocks/{symbol}"],
            fetcher=lambda path: client.get(path),
            params={"symbol": "RELIANCE"},
        )
        resolver.get_binding("stock_details").template   # "/stocks/{symbol}"
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._bindings: Dict[str, EndpointBinding] = {}
        self._lock = threading.Lock()

    def get_binding(self, operation_key: str) -> Optional[EndpointBinding]:
        return self._bindings.get(operation_key)

    def bind(self, operation_key: str, template: str) -> EndpointBinding:
        binding = EndpointBinding(operation_key, template, self._clock())
        with self._lock:
            self._bindings[operation_key] = binding
        logger.info(f"Bound {operation_key} -> {template}")
        return binding

    def invalidate(self, operation_key: str) -> bool:
        """Drop a binding, forcing discovery on next use"""
        with self._lock:
            removed = self._bindings.pop(operation_key, None)
        if removed:
            logger.warning(f"Binding {operation_key} -> {removed.template} invalidated")
        return removed is not None

    def clear(self):
        with self._lock:
            self._bindings.clear()

    def _discover(
        self,
        operation_key: str,
        candidates: List[str],
        probe: Callable[[str], Any],
        params: Optional[Mapping[str, Any]],
    ) -> Tuple[str, Any]:
        if not candidates:
            raise ValueError(f"No candidate templates for {operation_key}")

        last_error: Optional[MarketDataError] = None

        for i, template in enumerate(candidates):
            path = render_template(template, params)
            try:
                result = probe(path)
            except MarketDataError as e:
                logger.debug(
                    f"{operation_key}: candidate {i + 1}/{len(candidates)} {template} "
                    f"failed ({e.classification.value})"
                )
                last_error = e
                continue

            if _is_empty(result):
                logger.debug(f"{operation_key}: candidate {template} returned no data")
                continue

            self.bind(operation_key, template)
            return template, result

        logger.warning(f"{operation_key}: all {len(candidates)} candidate templates failed")
        if last_error is not None:
            raise last_error
        raise MarketDataError(
            ErrorClass.NOT_FOUND,
            message="No endpoint pattern returned data",
            operation=operation_key,
        )

    def resolve(
        self,
        operation_key: str,
        candidates: List[str],
        probe: Callable[[str], Any],
        params: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Template for an operation, probing candidates if none is bound yet

        Args:
            operation_key: logical operation ("stock_details")
            candidates: templates in priority order
            probe: called with each rendered path, raises MarketDataError on failure
            params: values for template placeholders

        Returns:
            The bound template

        Raises:
            MarketDataError: last probe error when every candidate fails
        """
        binding = self.get_binding(operation_key)
        if binding is not None:
            return binding.template

        template, _ = self._discover(operation_key, candidates, probe, params)
        return template

    def fetch(
        self,
        operation_key: str,
        candidates: List[str],
        fetcher: Callable[[str], Any],
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """
        Fetch through the bound template, discovering it on first use.

        Discovery reuses the successful probe's data, so the first call costs
        no extra request. A NOT_FOUND from a bound template drops the
        binding and is raised; the next call re-discovers.
        """
        binding = self.get_binding(operation_key)
        if binding is None:
            _, result = self._discover(operation_key, candidates, fetcher, params)
            return result

        try:
            return fetcher(render_template(binding.template, params))
        except MarketDataError as e:
            if e.classification == ErrorClass.NOT_FOUND:
                self.invalidate(operation_key)
            raise

    def get_status(self) -> Dict[str, str]:
        return {k: b.template for k, b in list(self._bindings.items())}


__all__ = [
    "EndpointResolver",
    "EndpointBinding",
    "render_template",
]
