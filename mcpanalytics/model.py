"""Server records stored in and returned by the search index."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    fraction = match.group(7) or ""
    micro = int((fraction + "000000")[:6])
    zone = match.group(8)
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = timezone.utc if not offset else timezone(sign * offset)
    return datetime(year, month, day, hour, minute, second, micro, tzinfo=tz)


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if not offset:
        return text + "Z"
    total = int(offset.total_seconds())
    sign = "-" if total < 0 else "+"
    hours, minutes = divmod(abs(total) // 60, 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{what}: expected an object, got {type(data).__name__}")
    return data


def _get_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r}: expected a string")
    return value


def _get_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r}: expected an integer")
    return value


def _get_float(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field {key!r}: expected a number")
    return float(value)


def _get_time(data: Mapping[str, Any], key: str) -> datetime:
    value = data.get(key)
    if value is None:
        return ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"field {key!r}: expected a timestamp string")
    return _parse_time(value)


def _get_str_list(data: Mapping[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field {key!r}: expected a list")
    items = []
    for item in value:
        if item is None:
            items.append("")
        elif isinstance(item, str):
            items.append(item)
        else:
            raise ValueError(f"field {key!r}: expected a list of strings")
    return items


def _get_str_map(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = _mapping(data.get(key), f"field {key!r}")
    result = {}
    for name, item in value.items():
        if item is None:
            result[name] = ""
        elif isinstance(item, str):
            result[name] = item
        else:
            raise ValueError(f"field {key!r}: expected string values")
    return result


def _get_objects(data: Mapping[str, Any], key: str, cls: Any) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field {key!r}: expected a list")
    return [cls.from_dict(item) for item in value]


@dataclass
class Package:
    """A way the server is distributed (npm, pypi, ...)."""

    type: str = ""
    name: str = ""
    version: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Package:
        data = _mapping(data, "package")
        return cls(
            type=_get_str(data, "type"),
            name=_get_str(data, "name"),
            version=_get_str(data, "version"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type, "name": self.name}
        if self.version:
            result["version"] = self.version
        return result


@dataclass
class VersionDetail:
    """Version information of a server."""

    version: str = ""
    sdk_version: str = ""
    protocol_version: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> VersionDetail:
        data = _mapping(data, "version_detail")
        return cls(
            version=_get_str(data, "version"),
            sdk_version=_get_str(data, "sdk_version"),
            protocol_version=_get_str(data, "protocol_version"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("version", self.version),
                ("sdk_version", self.sdk_version),
                ("protocol_version", self.protocol_version),
            )
            if value
        }


@dataclass
class Remote:
    """A remote connection method (stdio, http, sse)."""

    type: str = ""
    transport: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Remote:
        data = _mapping(data, "remote")
        return cls(
            type=_get_str(data, "type"),
            transport=_get_str(data, "transport"),
            command=_get_str(data, "command"),
            args=_get_str_list(data, "args"),
            url=_get_str(data, "url"),
            headers=_get_str_map(data, "headers"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type, "transport": self.transport}
        if self.command:
            result["command"] = self.command
        if self.args:
            result["args"] = list(self.args)
        if self.url:
            result["url"] = self.url
        if self.headers:
            result["headers"] = dict(self.headers)
        return result


@dataclass
class Capability:
    """A tool, prompt or template offered by a server."""

    name: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Capability:
        data = _mapping(data, "capability")
        return cls(name=_get_str(data, "name"), description=_get_str(data, "description"))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name}
        if self.description:
            result["description"] = self.description
        return result


@dataclass
class ServerDetail:
    """Complete information about one server, as indexed for search."""

    id: str = ""
    name: str = ""
    description: str = ""
    author: str = ""
    homepage: str = ""
    source: str = ""
    repository: str = ""
    license: str = ""
    categories: list[str] = field(default_factory=list)
    packages: list[Package] = field(default_factory=list)
    version_detail: VersionDetail = field(default_factory=VersionDetail)
    remotes: list[Remote] = field(default_factory=list)
    tools: list[Capability] = field(default_factory=list)
    prompts: list[Capability] = field(default_factory=list)
    templates: list[Capability] = field(default_factory=list)
    indexed_at: datetime = ZERO_TIME
    last_updated: datetime = ZERO_TIME
    install_count: int = 0
    rating_average: float = 0.0
    rating_count: int = 0
    popularity_score: float = 0.0
    trending_score: float = 0.0
    quality_score: float = 0.0
    score: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> ServerDetail:
        data = _mapping(data, "server")
        return cls(
            id=_get_str(data, "id"),
            name=_get_str(data, "name"),
            description=_get_str(data, "description"),
            author=_get_str(data, "author"),
            homepage=_get_str(data, "homepage"),
            source=_get_str(data, "source"),
            repository=_get_str(data, "repository"),
            license=_get_str(data, "license"),
            categories=_get_str_list(data, "categories"),
            packages=_get_objects(data, "packages", Package),
            version_detail=VersionDetail.from_dict(data.get("version_detail")),
            remotes=_get_objects(data, "remotes", Remote),
            tools=_get_objects(data, "tools", Capability),
            prompts=_get_objects(data, "prompts", Capability),
            templates=_get_objects(data, "templates", Capability),
            indexed_at=_get_time(data, "indexed_at"),
            last_updated=_get_time(data, "last_updated"),
            install_count=_get_int(data, "install_count"),
            rating_average=_get_float(data, "rating_average"),
            rating_count=_get_int(data, "rating_count"),
            popularity_score=_get_float(data, "popularity_score"),
            trending_score=_get_float(data, "trending_score"),
            quality_score=_get_float(data, "quality_score"),
            score=_get_float(data, "score"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
        }
        if self.author:
            result["author"] = self.author
        if self.homepage:
            result["homepage"] = self.homepage
        result["source"] = self.source
        if self.repository:
            result["repository"] = self.repository
        if self.license:
            result["license"] = self.license
        if self.categories:
            result["categories"] = list(self.categories)
        if self.packages:
            result["packages"] = [item.to_dict() for item in self.packages]
        result["version_detail"] = self.version_detail.to_dict()
        for key, items in (
            ("remotes", self.remotes),
            ("tools", self.tools),
            ("prompts", self.prompts),
            ("templates", self.templates),
        ):
            if items:
                result[key] = [item.to_dict() for item in items]
        result.update(
            indexed_at=_format_time(self.indexed_at),
            last_updated=_format_time(self.last_updated),
            install_count=self.install_count,
            rating_average=self.rating_average,
            rating_count=self.rating_count,
            popularity_score=self.popularity_score,
            trending_score=self.trending_score,
            quality_score=self.quality_score,
        )
        if self.score:
            result["score"] = self.score
        return result


@dataclass
class ServerStats:
    """Aggregated usage statistics for a server."""

    server_id: str = ""
    install_count: int = 0
    remove_count: int = 0
    rating_total: float = 0.0
    rating_count: int = 0
    rating_average: float = 0.0
    tool_call_count: int = 0
    prompt_use_count: int = 0
    template_use_count: int = 0
    last_calculated: datetime = ZERO_TIME

    @classmethod
    def from_dict(cls, data: Any) -> ServerStats:
        data = _mapping(data, "server stats")
        return cls(
            server_id=_get_str(data, "server_id"),
            install_count=_get_int(data, "install_count"),
            remove_count=_get_int(data, "remove_count"),
            rating_total=_get_float(data, "rating_total"),
            rating_count=_get_int(data, "rating_count"),
            rating_average=_get_float(data, "rating_average"),
            tool_call_count=_get_int(data, "tool_call_count"),
            prompt_use_count=_get_int(data, "prompt_use_count"),
            template_use_count=_get_int(data, "template_use_count"),
            last_calculated=_get_time(data, "last_calculated"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "install_count": self.install_count,
            "remove_count": self.remove_count,
            "rating_total": self.rating_total,
            "rating_count": self.rating_count,
            "rating_average": self.rating_average,
            "tool_call_count": self.tool_call_count,
            "prompt_use_count": self.prompt_use_count,
            "template_use_count": self.template_use_count,
            "last_calculated": _format_time(self.last_calculated),
        }


def determine_server_source(server_id: str, name: str) -> str:
    """Guess where a server comes from from its identifier and name."""
    if name.startswith("io.github."):
        return "github"
    if "community" in name or "community" in server_id:
        return "community"
    if "private" in name or "private" in server_id:
        return "private"
    return "github"