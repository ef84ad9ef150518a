from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from ..errors import ConfigError
from ..models import NotificationCandidate, RouteRule


def resolve(candidate: NotificationCandidate, rules: Iterable[RouteRule], default_channel: str) -> str:
    """
    最长前缀匹配（大小写不敏感，纯函数）。

    前缀等长时按配置顺序先到先得；无命中返回 default_channel。
    """
    origin = candidate.origin.lower()
    best: RouteRule | None = None
    for rule in rules:
        prefix = rule.match_prefix.lower()
        if not origin.startswith(prefix):
            continue
        if best is None or len(prefix) > len(best.match_prefix):
            best = rule
    return best.channel if best is not None else default_channel


@dataclass(frozen=True, slots=True)
class RouteTable:
    """单个 feed 的路由配置，一次运行内保持不变。"""

    rules: tuple[RouteRule, ...]
    default_channel: str

    def resolve(self, candidate: NotificationCandidate) -> str:
        return resolve(candidate, self.rules, self.default_channel)


def parse_mapping_string(value: str) -> tuple[RouteRule, ...]:
    """
    解析环境变量形式的映射：/ClientA:channel-a,/ClientB:channel-b

    每一对按最后一个冒号切分（前缀里允许出现冒号），空项跳过。
    """
    rules: list[RouteRule] = []
    for pair in value.split(","):
        idx = pair.rfind(":")
        if idx <= 0:
            continue
        prefix = pair[:idx].strip()
        channel = pair[idx + 1 :].strip()
        if prefix and channel:
            rules.append(RouteRule(match_prefix=prefix, channel=channel))
    return tuple(rules)


def parse_route_rules(value: Any, *, where: str) -> tuple[RouteRule, ...]:
    """
    JSON 配置中的路由规则，两种写法：
    - 列表：[{"match": "/clients/acme", "channel": "acme-chan"}, ...]
    - 对象：{"/clients/acme": "acme-chan", ...}（按书写顺序）
    """
    if value is None:
        return ()
    rules: list[RouteRule] = []
    if isinstance(value, dict):
        for prefix, channel in value.items():
            if not isinstance(channel, str) or not channel.strip():
                raise ConfigError(f"Expected channel name at {where}.{prefix}, got {channel!r}")
            rules.append(RouteRule(match_prefix=str(prefix), channel=channel.strip()))
        return tuple(rules)
    if isinstance(value, list):
        for i, item in enumerate(value):
            if not isinstance(item, dict):
                raise ConfigError(f"Expected object at {where}[{i}], got {type(item)}")
            prefix = item.get("match")
            channel = item.get("channel")
            if not isinstance(prefix, str) or not isinstance(channel, str) or not channel.strip():
                raise ConfigError(f"Route at {where}[{i}] needs string 'match' and 'channel'")
            rules.append(RouteRule(match_prefix=prefix, channel=channel.strip()))
        return tuple(rules)
    raise ConfigError(f"Expected list or object at {where}, got {type(value)}")
