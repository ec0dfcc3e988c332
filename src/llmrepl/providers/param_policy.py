from __future__ import annotations
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

_ACTIONS = ("allow", "drop", "reject")


class PolicyRejected(ValueError):
    def __init__(self, model: str, params: List[str], message: Optional[str] = None):
        super().__init__(message or f"Unsupported params for model '{model}': {params}")
        self.model = model
        self.params = params


@dataclass
class PolicyRule:
    regex: re.Pattern
    action: str              # "allow" | "drop" | "reject"
    params: List[str]
    message: Optional[str] = None


@dataclass
class PolicyResult:
    effective: Dict[str, Any]
    dropped: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ParamPolicy:
    """
    Per-model option filter. First rule whose regex matches the model wins.
    Evaluated per request, since the selected model changes at runtime.
    """
    rules: List[PolicyRule]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParamPolicy":
        rules: List[PolicyRule] = []
        for r in (data or {}).get("rules", []) or []:
            action = str(r["action"]).lower()
            if action not in _ACTIONS:
                raise ValueError(f"Unknown policy action '{r['action']}' (expected one of {_ACTIONS})")
            rules.append(PolicyRule(
                regex=re.compile(str(r["when_model_matches"])),
                action=action,
                params=[str(p) for p in r.get("params", [])],
                message=r.get("message"),
            ))
        return cls(rules)

    @classmethod
    def load(cls, path: Path) -> "ParamPolicy":
        return cls.from_dict(yaml.safe_load(Path(path).read_text()) or {})

    def rule_for(self, model: str) -> Optional[PolicyRule]:
        return next((r for r in self.rules if r.regex.search(model)), None)

    def evaluate(self, model: str, raw_params: Mapping[str, Any]) -> PolicyResult:
        """
        - allow:  keep everything
        - drop:   remove listed keys, one warning naming them
        - reject: raise PolicyRejected if any listed key is present
        """
        result = PolicyResult(effective=dict(raw_params or {}))
        rule = self.rule_for(model)
        if rule is None or rule.action == "allow":
            return result

        hit = sorted(k for k in rule.params if k in result.effective)
        if not hit:
            return result

        if rule.action == "reject":
            raise PolicyRejected(model, hit, rule.message)

        for k in hit:
            result.dropped[k] = result.effective.pop(k)
        result.warnings.append(rule.message or f"Dropping unsupported params for model '{model}': {hit}")
        return result
