"""Records decoded from the Jenkins JSON API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

PARAMETERS_PROPERTY = "hudson.model.ParametersDefinitionProperty"


def _with_slash(url: str) -> str:
    if url and not url.endswith("/"):
        return url + "/"
    return url


@dataclass(frozen=True)
class ParameterDefinition:
    name: str
    description: str = ""
    default: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ParameterDefinition:
        default_value = data.get("defaultParameterValue") or {}
        value = default_value.get("value")
        return cls(
            name=data.get("name", ""),
            description=data.get("description") or "",
            default="" if value is None else str(value),
        )


@dataclass(frozen=True)
class JobRef:
    """A Jenkins job as returned by ``/api/json``.

    Immutable once fetched; selecting the job again means fetching a new one.
    """

    name: str
    url: str
    color: str = ""
    parameters: tuple[ParameterDefinition, ...] = field(default_factory=tuple)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> JobRef:
        params: list[ParameterDefinition] = []
        for prop in data.get("property") or []:
            if prop.get("_class") == PARAMETERS_PROPERTY:
                params = [
                    ParameterDefinition.from_json(p)
                    for p in prop.get("parameterDefinitions") or []
                ]
                break
        return cls(
            name=data.get("name", ""),
            url=_with_slash(data.get("url", "")),
            color=data.get("color") or "",
            parameters=tuple(params),
        )

    @property
    def has_parameters(self) -> bool:
        return bool(self.parameters)

    def default_parameters(self) -> dict[str, str]:
        return {p.name: p.default for p in self.parameters}


@dataclass(frozen=True)
class Executable:
    number: int
    url: str


@dataclass(frozen=True)
class QueueItem:
    """A queue entry; ``executable`` stays None until an executor picks it up."""

    executable: Executable | None = None
    cancelled: bool = False

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> QueueItem:
        executable = data.get("executable")
        return cls(
            executable=Executable(
                number=executable.get("number", 0),
                url=_with_slash(executable.get("url", "")),
            )
            if executable
            else None,
            cancelled=bool(data.get("cancelled", False)),
        )

    @property
    def started(self) -> bool:
        return self.executable is not None


@dataclass(frozen=True)
class BuildResult:
    """Status of a build; terminal once ``building`` is False."""

    number: int | None
    building: bool
    result: str
    url: str

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> BuildResult:
        return cls(
            number=data.get("number"),
            building=bool(data.get("building", False)),
            result=data.get("result") or "",
            url=_with_slash(data.get("url", "")),
        )

    @property
    def console_url(self) -> str:
        return self.url + "consoleText"
