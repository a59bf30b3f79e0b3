from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from aad_group_roles.entra.errors import ConfigurationError


class AuthConfig(BaseModel):
    authorization_header: str = "Authorization"
    bearer_prefix: str = "Bearer"


class DefaultRule(BaseModel):
    auth_required: bool = True
    required_roles: list[str] = Field(default_factory=list)


class RouteRule(BaseModel):
    path: str
    methods: list[str] = Field(default_factory=lambda: ["GET"])

    auth_required: bool | None = None
    required_roles: list[str] = Field(default_factory=list)

    def normalized_methods(self) -> set[str]:
        return {m.upper() for m in self.methods}


class SecurityConfigModel(BaseModel):
    auth: AuthConfig = Field(default_factory=AuthConfig)
    default: DefaultRule = Field(default_factory=DefaultRule)
    routes: list[RouteRule] = Field(default_factory=list)

    # Entra group object id -> application role name.
    authorization_groups: dict[str, str] = Field(default_factory=dict)

    @field_validator("authorization_groups")
    @classmethod
    def _non_blank_groups(cls, value: dict[str, str]) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        for group_id, role in value.items():
            gid, name = str(group_id).strip(), str(role).strip()
            if not gid or not name:
                raise ValueError("authorization_groups entries need a group id and a role name")
            cleaned[gid] = name
        return cleaned


@dataclass(frozen=True)
class EffectiveRule:
    """Fully-resolved rule (defaults applied) for a particular request."""

    auth_required: bool
    required_roles: frozenset[str]


def _path_template_to_regex(path_template: str) -> re.Pattern[str]:
    # "/items/{id}" -> r"^/items/[^/]+$"
    regex = re.sub(r"\{[^/]+\}", r"[^/]+", path_template)
    return re.compile(rf"^{regex}$")


class SecurityConfig:
    """
    Runtime helper around validated config: route matching and the
    group -> role table used after membership lookup.
    """

    def __init__(self, model: SecurityConfigModel):
        self.model = model
        self._compiled_rules = [(_path_template_to_regex(r.path), r) for r in model.routes]

    @property
    def auth(self) -> AuthConfig:
        return self.model.auth

    @property
    def role_groups(self) -> Mapping[str, str]:
        return dict(self.model.authorization_groups)

    def match(self, path: str, method: str) -> EffectiveRule:
        method = method.upper()
        default = self.model.default

        for regex, rule in self._compiled_rules:
            if method in rule.normalized_methods() and regex.match(path):
                # Any role requirement implies authentication.
                auth_required = default.auth_required or bool(rule.required_roles)
                return EffectiveRule(
                    auth_required=auth_required if rule.auth_required is None else rule.auth_required,
                    required_roles=frozenset(rule.required_roles or default.required_roles),
                )

        return EffectiveRule(
            auth_required=default.auth_required,
            required_roles=frozenset(default.required_roles),
        )


def load_security_config(path: Path) -> SecurityConfig:
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read security config: {path}") from e
    raw: dict[str, Any] = yaml.safe_load(raw_text) or {}

    if "security" not in raw:
        raise ConfigurationError(f"Missing top-level 'security' key in config: {path}")

    model = SecurityConfigModel.model_validate(raw["security"])
    return SecurityConfig(model)
