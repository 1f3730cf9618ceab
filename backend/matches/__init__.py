"""Match escrow and settlement engine for Coinduel."""
from .state import get_match, list_open_matches, load_match, ensure_not_terminal
from .escrow import create_match, join_match
from .adjudication import submit_result
from .settlement import settle, apply_settlement
from .refunds import refund, apply_refund
from .cancellation import request_cancellation, resolve_cancel_request
from .overrides import override_match, resolve_dispute, DRAW
from .reaper import reap_idle_matches, list_idle_matches, reaper_loop, ReapedMatch

__all__ = [
    "get_match",
    "list_open_matches",
    "load_match",
    "ensure_not_terminal",
    "create_match",
    "join_match",
    "submit_result",
    "settle",
    "apply_settlement",
    "refund",
    "apply_refund",
    "request_cancellation",
    "resolve_cancel_request",
    "override_match",
    "resolve_dispute",
    "DRAW",
    "reap_idle_matches",
    "list_idle_matches",
    "reaper_loop",
    "ReapedMatch",
]
