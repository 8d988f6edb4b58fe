"""Check an environment against the config contract without raising.

:class:`~triage_bot.config.settings.Settings` fails on the first bad value;
the audit instead collects every problem so ``triage-bot env check`` can show
them all at once.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from triage_bot.config.contract import FALSY, TRUTHY, Profile, VarSpec, contract_by_key, default_contract


def _bounds(spec: VarSpec, number: float) -> list[str]:
    problems = []
    if spec.min_value is not None and number < spec.min_value:
        problems.append(f"Must be >= {spec.min_value}.")
    if spec.max_value is not None and number > spec.max_value:
        problems.append(f"Must be <= {spec.max_value}.")
    return problems


def _check_bool(spec: VarSpec, value: str) -> list[str]:
    if value.lower() in TRUTHY | FALSY:
        return []
    return ["Must be a boolean-ish value (1/0/true/false/yes/no)."]


def _check_int(spec: VarSpec, value: str) -> list[str]:
    try:
        return _bounds(spec, int(value))
    except ValueError:
        return ["Must be an integer."]


def _check_float(spec: VarSpec, value: str) -> list[str]:
    try:
        return _bounds(spec, float(value))
    except ValueError:
        return ["Must be a number."]


def _check_json(spec: VarSpec, value: str) -> list[str]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return ["Must be valid JSON."]
    if not isinstance(parsed, dict) or not all(isinstance(v, str) for v in parsed.values()):
        return ["Must be a JSON object of strings."]
    return []


def _check_url(spec: VarSpec, value: str) -> list[str]:
    return [] if value.startswith(("http://", "https://")) else ["Must start with http:// or https://"]


def _check_path(spec: VarSpec, value: str) -> list[str]:
    if "://" in value and not value.startswith("sqlite"):
        return ["Expected a filesystem path or sqlite:/// URI."]
    return []


def _check_string(spec: VarSpec, value: str) -> list[str]:
    if spec.choices and value not in spec.choices:
        return [f"Must be one of: {', '.join(spec.choices)}."]
    return []


_CHECKS: dict[str, Callable[[VarSpec, str], list[str]]] = {
    "bool": _check_bool,
    "int": _check_int,
    "float": _check_float,
    "json": _check_json,
    "url": _check_url,
    "path": _check_path,
    "string": _check_string,
}


def _is_required(spec: VarSpec, env: Mapping[str, str], profile: Profile) -> bool:
    if profile in spec.required_in:
        return True
    condition = spec.required_if
    if condition is None:
        return False
    controlling = (env.get(condition.key) or "").strip()
    if not controlling:
        controlling = contract_by_key()[condition.key].default_for(profile) or ""
    return controlling == condition.equals


def _warnings(spec: VarSpec, value: str, profile: Profile) -> list[str]:
    found = []
    if spec.prefix and not value.startswith(spec.prefix):
        found.append(f"Expected a value starting with {spec.prefix}")
    if spec.kind == "path" and profile == "prod" and not value.startswith("sqlite"):
        if not Path(value).expanduser().is_absolute():
            found.append("Relative path; prefer absolute in production.")
    return found


@dataclass(frozen=True)
class VarAudit:
    key: str
    group: str
    required: bool
    value: str | None
    default: str | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    secret: bool = False

    @property
    def present(self) -> bool:
        return self.value is not None

    def redacted_value(self) -> str | None:
        if self.secret and self.value is not None:
            return "<set>"
        return self.value


@dataclass(frozen=True)
class AuditReport:
    profile: Profile
    vars: list[VarAudit]

    @property
    def errors(self) -> int:
        return sum(1 for item in self.vars if item.errors)

    @property
    def warnings(self) -> int:
        return sum(1 for item in self.vars if item.warnings)

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def to_json(self, *, reveal_secrets: bool = False) -> str:
        entries = []
        for item in self.vars:
            entry = asdict(item)
            entry["present"] = item.present
            if not reveal_secrets:
                entry["value"] = item.redacted_value()
            entries.append(entry)
        payload = {
            "profile": self.profile,
            "ok": self.ok,
            "errors": self.errors,
            "warnings": self.warnings,
            "vars": entries,
        }
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def audit_var(spec: VarSpec, env: Mapping[str, str], profile: Profile) -> VarAudit:
    value = (env.get(spec.key) or "").strip() or None
    required = _is_required(spec, env, profile)
    if value is None:
        errors = ["Missing required value."] if required else []
        warnings: list[str] = []
    else:
        errors = _CHECKS[spec.kind](spec, value)
        warnings = _warnings(spec, value, profile)
    return VarAudit(
        key=spec.key,
        group=spec.group,
        required=required,
        value=value,
        default=spec.default_for(profile),
        errors=errors,
        warnings=warnings,
        secret=spec.secret,
    )


def audit_environment(
    env: Mapping[str, str] | None = None,
    *,
    profile: Profile = "dev",
    contract: tuple[VarSpec, ...] | None = None,
) -> AuditReport:
    env = dict(os.environ) if env is None else env
    return AuditReport(profile, [audit_var(spec, env, profile) for spec in contract or default_contract()])
