"""Pipeline document schema and loader.

A pipeline document is YAML or JSON. It declares the channel matrix, the
ordered stages, the post-success publish actions, notification policy and the
global environment (plain ``KEY=value`` pairs and encrypted ``secure`` blobs).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

import yaml
from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError

NotifyPolicy = Literal["always", "never", "change"]


def _as_list(v):
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


StrList = Annotated[Tuple[str, ...], BeforeValidator(_as_list)]


class Stage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    commands: StrList = Field(..., min_length=1, validation_alias=AliasChoices("run", "commands"))
    only: StrList = Field(default=(), description="Channels this stage runs on; empty means all.")
    secrets: StrList = Field(default=(), description="Secret names injected into this stage.")

    def applies_to(self, channel: str) -> bool:
        return not self.only or channel in self.only


class PublishAction(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    run: StrList = ()
    uses: Optional[Literal["github-pages", "coveralls"]] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    secrets: StrList = ()

    @model_validator(mode="after")
    def _one_kind(self):
        if bool(self.run) == bool(self.uses):
            raise ValueError(f"publish action '{self.name}' needs exactly one of 'run' or 'uses'")
        return self


class Notifications(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    on_success: NotifyPolicy = "always"
    # failures always notify; the key is accepted for Travis-style documents
    on_failure: Literal["always"] = "always"
    email: StrList = ()
    webhooks: StrList = ()


class SecureEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    secure: str = Field(..., min_length=1)
    name: Optional[str] = None


class EnvConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    global_: Tuple[Union[str, SecureEntry], ...] = Field(default=(), alias="global")

    @field_validator("global_")
    @classmethod
    def _plain_pairs(cls, entries):
        for e in entries:
            if isinstance(e, str) and "=" not in e:
                raise ValueError(f"env entry must be KEY=value, got {e!r}")
        return entries

    def plain(self) -> Dict[str, str]:
        out = {}
        for e in self.global_:
            if isinstance(e, str):
                k, _, v = e.partition("=")
                out[k.strip()] = v
        return out

    def secure(self) -> List[SecureEntry]:
        return [e for e in self.global_ if isinstance(e, SecureEntry)]


class PipelineConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = "pipeline"
    channels: StrList = Field(..., min_length=1, validation_alias=AliasChoices("channels", "rust"))
    allow_failures: Tuple[str, ...] = ()
    primary_channel: str = "stable"
    stage_timeout: int = Field(default=900, ge=1)
    max_parallel: Optional[int] = Field(default=None, ge=1)
    stages: Tuple[Stage, ...] = Field(..., min_length=1)
    after_success: Tuple[PublishAction, ...] = ()
    notifications: Notifications = Field(default_factory=Notifications)
    env: EnvConfig = Field(default_factory=EnvConfig)

    @field_validator("allow_failures", mode="before")
    @classmethod
    def _allow_failure_entries(cls, v):
        out = []
        for item in _as_list(v):
            if isinstance(item, dict):
                item = item.get("channel") or item.get("rust")
            if not isinstance(item, str) or not item:
                raise ValueError("allow_failures entries must be channel names or {channel: name}")
            out.append(item)
        return out

    @model_validator(mode="after")
    def _check(self):
        names = [s.name for s in self.stages]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate stage names: {', '.join(dupes)}")
        if self.primary_channel not in self.channels:
            raise ValueError(f"primary_channel '{self.primary_channel}' is not a declared channel")
        return self


def parse_config(doc: Any) -> PipelineConfig:
    if not isinstance(doc, dict):
        raise ConfigError("pipeline document must be a mapping")
    try:
        return PipelineConfig.model_validate(doc)
    except ValidationError as e:
        lines = [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()]
        raise ConfigError("invalid pipeline document:\n" + "\n".join(lines)) from e


def load_document(path) -> Dict[str, Any]:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read pipeline document {p}: {e}") from e
    try:
        if p.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot parse pipeline document {p}: {e}") from e


def load_config(path) -> PipelineConfig:
    return parse_config(load_document(path))
