"""
Verification Parser

Turns a plan's <verification> block into canonical check definitions.

Dialects, detected in this order:

1. Structured (CI gating): a YAML list of {name, cmd, timeout} or
   {name, manual: true}. All-or-nothing: any invalid item fails the whole
   document with zero checks.

       - name: type_check
         cmd: mypy .
       - name: tests
         cmd: pytest -q
         timeout: 300
       - name: ux_review
         manual: true

2. Checklist: "- [ ] `cmd` text" items become cmd checks, other checkbox
   items become manual checks. Names are check_001, check_002, ...

3. Free-form: every bullet is a manual check; backticks are context for
   the reviewer, not commands.

A plan without a block parses to format EMPTY, success, no checks.
"""

import re
from typing import Optional, Dict, Any, List, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)

from .verification_model import ParseResult, VerificationCheckDef, VerificationFormat

TAG = "verification"
OPEN_TAG = f"<{TAG}>"
CLOSE_TAG = f"</{TAG}>"

FENCE_PATTERN = re.compile(r"^\s*(`{3,}|~{3,})")
BLOCK_PATTERN = re.compile(re.escape(OPEN_TAG) + r"(.*?)" + re.escape(CLOSE_TAG), re.DOTALL)
CHECKBOX_PATTERN = re.compile(r"^[-*]\s*\[[ xX]\]\s*(.+)$")
BULLET_PATTERN = re.compile(r"^[-*]\s+(?:\[[ xX]\]\s*)?(.+)$")
LEADING_CMD_PATTERN = re.compile(r"^`([^`]+)`")


# -----------------------------------------------------------------------------
# Block Extraction
# -----------------------------------------------------------------------------
def _mask_fenced_code(text: str) -> str:
    """Blank out fenced code blocks, keeping offsets intact."""
    masked = []
    fence: Optional[str] = None
    for line in text.splitlines(keepends=True):
        match = FENCE_PATTERN.match(line)
        if fence is None and not match:
            masked.append(line)
            continue
        if fence is None:
            fence = match.group(1)[0]
        elif match and match.group(1)[0] == fence:
            fence = None
        body = line.rstrip("\r\n")
        masked.append(" " * len(body) + line[len(body):])
    return "".join(masked)


def extract_verification_block(text: Optional[str]) -> Optional[str]:
    """
    Return the content of the last <verification> block outside code fences.

    Earlier blocks are usually examples; the real section comes last.
    """
    if not text:
        return None
    masked = _mask_fenced_code(text)
    matches = list(BLOCK_PATTERN.finditer(masked))
    if not matches:
        return None
    last = matches[-1]
    return text[last.start(1):last.end(1)]


def detect_format(section: str) -> VerificationFormat:
    trimmed = section.strip()
    if trimmed.startswith("-") and ("name:" in trimmed or "cmd:" in trimmed):
        return VerificationFormat.STRUCTURED
    if any(CHECKBOX_PATTERN.match(line.strip()) for line in section.splitlines()):
        return VerificationFormat.CHECKLIST
    return VerificationFormat.FREEFORM


# -----------------------------------------------------------------------------
# Structured Dialect
# -----------------------------------------------------------------------------
class StructuredCheck(BaseModel):
    """One item of a structured verification list."""
    model_config = ConfigDict(extra="ignore")

    name: StrictStr
    cmd: Optional[StrictStr] = None
    manual: Optional[StrictBool] = None
    timeout: Optional[Union[StrictInt, StrictFloat]] = None
    description: Optional[StrictStr] = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout_positive(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("must be a number")
        if isinstance(value, (int, float)) and value <= 0:
            raise ValueError("must be > 0")
        return value

    @model_validator(mode="after")
    def _cmd_or_manual(self) -> "StructuredCheck":
        if self.cmd is not None and self.manual is not None:
            raise ValueError("cannot have both 'cmd' and 'manual' (mutually exclusive)")
        if self.cmd is None and not self.manual:
            raise ValueError("needs either 'cmd' or 'manual: true'")
        if self.cmd is not None and not self.cmd.strip():
            raise ValueError("'cmd' must not be empty")
        return self

    def to_check_def(self) -> VerificationCheckDef:
        return VerificationCheckDef(
            name=self.name,
            cmd=self.cmd,
            manual=bool(self.manual),
            timeout=float(self.timeout) if self.timeout is not None else None,
            description=self.description,
        )


def _format_validation_error(label: str, error: ValidationError) -> List[str]:
    messages = []
    for detail in error.errors():
        message = detail["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        field_name = ".".join(str(part) for part in detail.get("loc", ()))
        messages.append(f"Item {label}: '{field_name}' {message}" if field_name else f"Item {label}: {message}")
    return messages


def _parse_structured(section: str) -> ParseResult:
    fmt = VerificationFormat.STRUCTURED
    try:
        parsed = yaml.safe_load(section)
    except yaml.YAMLError as e:
        return ParseResult(success=False, format=fmt, errors=(f"Invalid YAML syntax: {e}",))

    if not isinstance(parsed, list):
        return ParseResult(success=False, format=fmt, errors=("Verification section must be a YAML list",))

    errors: List[str] = []
    checks: List[VerificationCheckDef] = []
    seen = set()

    for index, item in enumerate(parsed, start=1):
        if not isinstance(item, dict):
            errors.append(f"Item {index}: must be a mapping")
            continue

        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append(f"Item {index}: missing required 'name' field")
            continue
        if name in seen:
            errors.append(f"Item {index}: duplicate name '{name}'")
            continue
        seen.add(name)

        try:
            checks.append(StructuredCheck.model_validate(item).to_check_def())
        except ValidationError as e:
            errors.extend(_format_validation_error(f"'{name}'", e))

    if errors:
        return ParseResult(success=False, format=fmt, errors=tuple(errors))
    return ParseResult(success=True, format=fmt, checks=tuple(checks))


# -----------------------------------------------------------------------------
# Checklist and Free-form Dialects
# -----------------------------------------------------------------------------
def _check_name(index: int) -> str:
    return f"check_{index:03d}"


def _parse_checklist(section: str) -> ParseResult:
    checks = []
    for line in section.splitlines():
        match = CHECKBOX_PATTERN.match(line.strip())
        if not match:
            continue
        description = match.group(1).strip()
        if not description:
            continue

        name = _check_name(len(checks) + 1)
        cmd_match = LEADING_CMD_PATTERN.match(description)
        if cmd_match:
            checks.append(VerificationCheckDef(name=name, cmd=cmd_match.group(1), description=description))
        else:
            checks.append(VerificationCheckDef(name=name, manual=True, description=description))

    return ParseResult(success=True, format=VerificationFormat.CHECKLIST, checks=tuple(checks))


def _parse_freeform(section: str) -> ParseResult:
    checks = []
    for line in section.splitlines():
        match = BULLET_PATTERN.match(line.strip())
        if not match:
            continue
        description = match.group(1).strip()
        if not description:
            continue
        checks.append(VerificationCheckDef(name=_check_name(len(checks) + 1), manual=True, description=description))

    return ParseResult(success=True, format=VerificationFormat.FREEFORM, checks=tuple(checks))


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def parse_verification_section(section: str) -> ParseResult:
    """Parse the inside of a <verification> block."""
    fmt = detect_format(section)
    if fmt == VerificationFormat.STRUCTURED:
        return _parse_structured(section)
    if fmt == VerificationFormat.CHECKLIST:
        return _parse_checklist(section)
    return _parse_freeform(section)


def parse_verification(plan_text: Optional[str]) -> ParseResult:
    """Parse the <verification> block of a plan document."""
    section = extract_verification_block(plan_text)
    if section is None:
        return ParseResult(success=True, format=VerificationFormat.EMPTY)
    return parse_verification_section(section)


def check_defs_summary(result: ParseResult) -> Dict[str, Any]:
    """Compact dict for logs and audit events."""
    return {
        "format": result.format.value,
        "success": result.success,
        "checks": [c.to_dict() for c in result.checks],
        "errors": list(result.errors),
    }
