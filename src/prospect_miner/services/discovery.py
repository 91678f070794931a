"""Contract for the external company-discovery provider.

The engine does not ship a network client. Anything implementing
``DiscoveryProvider`` can be injected; a provider that answers with raw
model text (a JSON block plus grounding chunks) can be wrapped with
``CallableDiscoveryProvider``.
"""

from __future__ import annotations

import importlib
import json
import logging
import re
from typing import Any, Awaitable, Callable, Iterable, List, Protocol, Sequence, Tuple

from pydantic import ValidationError

from prospect_miner.models import (
    CandidateCompany,
    DiscoveryRequest,
    DiscoveryResult,
    MiningJob,
    ProvenanceSource,
)

logger = logging.getLogger(__name__)


class DiscoveryProvider(Protocol):
    async def prospect(self, request: DiscoveryRequest) -> DiscoveryResult:
        ...


RawProspectCall = Callable[[DiscoveryRequest], Awaitable[Tuple[str, Sequence[Any]]]]


def request_for(job: MiningJob) -> DiscoveryRequest:
    """Build the provider request for the job's next page."""

    filters = job.filters
    size = filters.size.value if hasattr(filters.size, "value") else filters.size
    return DiscoveryRequest(
        segment=filters.segment,
        city=filters.city,
        state=filters.state,
        size=None if size in ("", "all") else size,
        tax_regime=filters.tax_regime or None,
        page=job.next_page,
    )


_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")
_FENCE = re.compile(r"```(?:json)?")


def parse_discovery_payload(text: str, grounding_chunks: Iterable[Any] = ()) -> DiscoveryResult:
    """Extract companies from a model answer and URIs from its grounding.

    The answer is expected to contain a JSON object with a ``companies``
    array, possibly wrapped in a markdown fence. Grounding chunks look like
    ``{"web": {"uri": ..., "title": ...}}``. Unparseable text gives an
    empty result; individual malformed companies are skipped.
    """

    sources = _sources_from_chunks(grounding_chunks)

    match = _JSON_BLOCK.search(text or "")
    if not match:
        return DiscoveryResult(companies=[], sources=[])
    try:
        parsed = json.loads(_FENCE.sub("", match.group(0)))
    except ValueError as exc:
        logger.warning("Discovery answer is not valid JSON: %s", exc)
        return DiscoveryResult(companies=[], sources=[])

    raw_companies = parsed.get("companies") if isinstance(parsed, dict) else None
    companies: List[CandidateCompany] = []
    for raw in raw_companies or []:
        try:
            companies.append(CandidateCompany.model_validate(raw))
        except ValidationError as exc:
            logger.debug("Skipping malformed company record: %s", exc)
    return DiscoveryResult(companies=companies, sources=sources)


def _sources_from_chunks(chunks: Iterable[Any]) -> List[ProvenanceSource]:
    sources: List[ProvenanceSource] = []
    for chunk in chunks or []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if isinstance(web, dict) and web.get("uri"):
            sources.append(ProvenanceSource(uri=web["uri"], title=web.get("title")))
    return sources


class CallableDiscoveryProvider:
    """Adapts an async ``(request) -> (text, grounding_chunks)`` function."""

    def __init__(self, call: RawProspectCall):
        self._call = call

    async def prospect(self, request: DiscoveryRequest) -> DiscoveryResult:
        text, chunks = await self._call(request)
        return parse_discovery_payload(text, chunks)


def load_provider(factory_path: str) -> DiscoveryProvider:
    """Instantiate a provider from a ``"package.module:factory"`` path."""

    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Provider factory must look like 'module:callable', got {factory_path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()
