from __future__ import annotations

from .base import FormContext, FormResult, FormRule, Section
from .model100 import Model100Rule
from .model714 import Model714Rule
from .model720 import Model720Rule

__all__ = ["FormContext", "FormResult", "FormRule", "Section", "rule_for"]


def rule_for(report_type: str) -> FormRule:
    if report_type == "model-100":
        return Model100Rule()
    if report_type == "model-720":
        return Model720Rule()
    if report_type == "model-714":
        return Model714Rule()
    raise ValueError(f"Unsupported report type: {report_type!r}")
