# filters.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

from .ui.console import get_console

if TYPE_CHECKING:
    from .model import ExpandedJob, TriggerContext

# ---------------------------------------------------------------------
# Ref filtering
# ---------------------------------------------------------------------
# A job's `only` / `except` lists are an ordered set of predicates over the
# trigger ref:
#   "master"      literal ref name
#   "/^test.*/"   regular expression, searched against the ref name
#   "/release/i"  same, case-insensitive
#   "branches"    any branch
#   "tags"        any tag
#
# Precedence: except > only > default(included).
# ---------------------------------------------------------------------

REF_KIND_KEYWORDS = {"branches": "branch", "tags": "tag"}

_DELIMITED = re.compile(r"^/(?P<body>.*)/(?P<flags>[i]*)$", re.DOTALL)


class Decision(str, Enum):
    INCLUDED = "included"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class RefPattern:
    text: str
    regex: Optional[re.Pattern] = None
    ref_kind: Optional[str] = None

    @classmethod
    def compile(cls, text: str) -> RefPattern:
        """
        Build a pattern from its descriptor form.

        Raises re.error for a delimited pattern that does not compile; the
        parser turns that into a SchemaError so a bad filter never reaches
        evaluation.
        """
        text = str(text)
        m = _DELIMITED.match(text)
        if m:
            flags = re.IGNORECASE if "i" in m.group("flags") else 0
            return cls(text=text, regex=re.compile(m.group("body"), flags))
        if text in REF_KIND_KEYWORDS:
            return cls(text=text, ref_kind=REF_KIND_KEYWORDS[text])
        return cls(text=text)

    def matches(self, ctx: TriggerContext) -> bool:
        if self.regex is not None:
            return self.regex.search(ctx.ref_name) is not None
        if self.ref_kind is not None:
            return ctx.ref_kind.value == self.ref_kind
        return ctx.ref_name == self.text


@dataclass(frozen=True)
class FilterRules:
    only: Tuple[RefPattern, ...] = ()
    except_: Tuple[RefPattern, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.only and not self.except_

    def evaluate(self, ctx: TriggerContext) -> Decision:
        if any(p.matches(ctx) for p in self.except_):
            return Decision.EXCLUDED
        if self.only:
            if any(p.matches(ctx) for p in self.only):
                return Decision.INCLUDED
            return Decision.EXCLUDED
        return Decision.INCLUDED

    def explain(self, ctx: TriggerContext) -> str:
        hit = [p.text for p in self.except_ if p.matches(ctx)]
        if hit:
            return f"except matched {hit}"
        if self.only:
            hit = [p.text for p in self.only if p.matches(ctx)]
            if hit:
                return f"only matched {hit}"
            return f"no only pattern matched {[p.text for p in self.only]}"
        return "no filters"


@dataclass
class Selection:
    included: List[ExpandedJob] = field(default_factory=list)
    excluded: List[ExpandedJob] = field(default_factory=list)


def select_jobs(
    jobs: List[ExpandedJob],
    ctx: TriggerContext,
    *,
    print_plan: bool = True,
) -> Selection:
    """Split expanded jobs into included/excluded for this trigger."""
    console = get_console()
    selection = Selection()

    for j in jobs:
        rules = j.spec.filters
        decision = rules.evaluate(ctx)
        if decision == Decision.INCLUDED:
            selection.included.append(j)
            if print_plan:
                console.print_plan_job(j.name, rules.explain(ctx))
        else:
            selection.excluded.append(j)
            if print_plan:
                console.print_plan_job_skipped(j.name, rules.explain(ctx))

    return selection
