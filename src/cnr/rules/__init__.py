from .event_filter import EventFilter, FilterState
from .routing import RouteTable, parse_mapping_string, parse_route_rules, resolve

__all__ = [
    "EventFilter",
    "FilterState",
    "RouteTable",
    "parse_mapping_string",
    "parse_route_rules",
    "resolve",
]
