# coding=utf-8

from .aggregator import BOUNDARY_MARKERS, PartialSnapshot, Segment, Token, TokenAggregator, has_boundary
from .finalize_policy import FinalizationPolicy, FinalizeDecision
from .relay import RelaySettings, Session, SessionRegistry, SessionRelay
from .upstream import (
    ClosedEvent,
    ParseErrorEvent,
    ProviderErrorEvent,
    TokensEvent,
    UpstreamError,
    UpstreamSession,
    UpstreamSettings,
    UpstreamState,
    parse_provider_message,
)

__all__ = [
    "BOUNDARY_MARKERS",
    "ClosedEvent",
    "FinalizationPolicy",
    "FinalizeDecision",
    "ParseErrorEvent",
    "PartialSnapshot",
    "ProviderErrorEvent",
    "RelaySettings",
    "Segment",
    "Session",
    "SessionRegistry",
    "SessionRelay",
    "Token",
    "TokenAggregator",
    "TokensEvent",
    "UpstreamError",
    "UpstreamSession",
    "UpstreamSettings",
    "UpstreamState",
    "has_boundary",
    "parse_provider_message",
]
