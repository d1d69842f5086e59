"""
Listing Validator Module

Validates cleaned listing records and builds the canonical BusinessListing.
Missing required fields are errors; implausible values are warnings that
do not reject the record.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from harvester.models import BusinessListing


class ValidationSeverity(Enum):
    """Severity level of validation issues."""
    ERROR = "error"      # Critical - record rejected
    WARNING = "warning"  # Non-critical - record kept


@dataclass
class ValidationIssue:
    """A single validation issue."""

    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None


@dataclass
class ValidationResult:
    """Result of validating one cleaned record."""

    is_valid: bool
    listing: Optional[BusinessListing] = None
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[str]:
        return [i.message for i in self.issues if i.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> List[str]:
        return [i.message for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ListingValidator:
    """
    Applies listing business rules.

    Example:
        validator = ListingValidator()
        result = validator.validate(cleaner.clean_record(raw))
        if result.is_valid:
            save(result.listing)
    """

    REQUIRED = (
        ("title", "Title is required"),
        ("listing_id", "Listing ID is required"),
        ("location", "Location is required"),
    )

    PRICE_TO_REVENUE_CEILING = 20
    MAX_EMPLOYEES = 10_000
    MIN_YEAR = 1800

    def validate(self, data: Dict[str, Any]) -> ValidationResult:
        issues: List[ValidationIssue] = []

        def error(name: str, message: str, value: Any = None) -> None:
            issues.append(ValidationIssue(name, message, ValidationSeverity.ERROR, value))

        def warn(name: str, message: str, value: Any = None) -> None:
            issues.append(ValidationIssue(name, message, ValidationSeverity.WARNING, value))

        for name, message in self.REQUIRED:
            if not data.get(name):
                error(name, message)

        if not data.get("industry"):
            warn("industry", "Industry not specified")
        if not data.get("description"):
            warn("description", "Description not available")

        asking = data.get("asking_price")
        revenue = data.get("revenue")
        cash_flow = data.get("cash_flow")

        if asking is not None and asking < 0:
            error("asking_price", "Asking price cannot be negative", asking)
        if revenue is not None and revenue < 0:
            warn("revenue", "Revenue is negative", revenue)
        if asking and revenue and revenue > 0 and asking > revenue * self.PRICE_TO_REVENUE_CEILING:
            warn("asking_price", "Asking price seems unusually high compared to revenue", asking)
        if cash_flow and revenue and cash_flow > revenue:
            warn("cash_flow", "Cash flow higher than revenue (unusual)", cash_flow)

        established = data.get("established")
        if established is not None and not (self.MIN_YEAR <= established <= date.today().year):
            warn("established", f"Established year {established} seems unrealistic", established)
            established = None

        employees = data.get("employees")
        if employees is not None and employees > self.MAX_EMPLOYEES:
            warn("employees", f"Employee count {employees} seems unusually high", employees)

        if any(i.severity == ValidationSeverity.ERROR for i in issues):
            return ValidationResult(is_valid=False, issues=issues)

        fields = dict(data)
        fields["established"] = established
        if not fields.get("state"):
            match = re.search(r"\b([A-Z]{2})\b", fields["location"])
            fields["state"] = match.group(1) if match else "unknown"

        try:
            listing = BusinessListing.model_validate(fields)
        except ValidationError as e:
            for err in e.errors():
                error(".".join(str(loc) for loc in err["loc"]), err["msg"], err.get("input"))
            return ValidationResult(is_valid=False, issues=issues)

        return ValidationResult(is_valid=True, listing=listing, issues=issues)
