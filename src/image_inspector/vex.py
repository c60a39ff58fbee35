# Copyright 2025 The Sigstore Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""OpenVEX document model.

See: https://github.com/openvex/spec/blob/main/OPENVEX-SPEC.md

```python
document = image_inspector.vex.parse_vex(predicate_bytes)
for statement in document.statements:
    print(statement.vulnerability.name, statement.status.value)
```

Documents written against the first OpenVEX draft, where vulnerabilities and
products were plain strings, are accepted as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
import enum
import json
from typing import Any


class VEXStatus(enum.Enum):
    """Impact status of a vulnerability on a product."""

    AFFECTED = "affected"
    NOT_AFFECTED = "not_affected"
    FIXED = "fixed"
    UNDER_INVESTIGATION = "under_investigation"


@dataclass(frozen=True)
class VEXVulnerability:
    name: str
    id: str = ""
    description: str = ""
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class VEXProduct:
    id: str


@dataclass(frozen=True)
class VEXStatement:
    """A single statement about one vulnerability and a set of products."""

    vulnerability: VEXVulnerability
    status: VEXStatus
    products: tuple[VEXProduct, ...] = ()
    justification: str = ""
    status_notes: str = ""
    impact_statement: str = ""
    action_statement: str = ""
    timestamp: str = ""

    @property
    def needs_justification(self) -> bool:
        """Whether a `not_affected` statement is missing its reasoning."""
        return (
            self.status == VEXStatus.NOT_AFFECTED
            and not self.justification
            and not self.impact_statement
        )


@dataclass(frozen=True)
class VEXDocument:
    context: str
    id: str
    author: str = ""
    role: str = ""
    timestamp: str = ""
    last_updated: str = ""
    version: int = 0
    tooling: str = ""
    statements: tuple[VEXStatement, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Convert back to the OpenVEX JSON shape."""
        result: dict[str, Any] = {
            "@context": self.context,
            "@id": self.id,
            "author": self.author,
            "timestamp": self.timestamp,
        }
        for key, value in (
            ("role", self.role),
            ("last_updated", self.last_updated),
            ("version", self.version),
            ("tooling", self.tooling),
        ):
            if value:
                result[key] = value
        result["statements"] = [_statement_to_dict(s) for s in self.statements]
        return result


def _statement_to_dict(statement: VEXStatement) -> dict[str, Any]:
    vulnerability: dict[str, Any] = {"name": statement.vulnerability.name}
    if statement.vulnerability.id:
        vulnerability["@id"] = statement.vulnerability.id
    if statement.vulnerability.description:
        vulnerability["description"] = statement.vulnerability.description
    if statement.vulnerability.aliases:
        vulnerability["aliases"] = list(statement.vulnerability.aliases)

    result: dict[str, Any] = {
        "vulnerability": vulnerability,
        "products": [{"@id": p.id} for p in statement.products],
        "status": statement.status.value,
    }
    for key in (
        "justification",
        "status_notes",
        "impact_statement",
        "action_statement",
        "timestamp",
    ):
        value = getattr(statement, key)
        if value:
            result[key] = value
    return result


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"Field '{key}' must be a string")
    return value


def _parse_vulnerability(data: Any) -> VEXVulnerability:
    if isinstance(data, str):
        return VEXVulnerability(name=data)
    if not isinstance(data, dict):
        raise ValueError("Statement vulnerability must be an object")
    aliases = data.get("aliases") or []
    if not isinstance(aliases, list):
        raise ValueError("Vulnerability aliases must be a list")
    return VEXVulnerability(
        name=_string(data, "name"),
        id=_string(data, "@id"),
        description=_string(data, "description"),
        aliases=tuple(str(alias) for alias in aliases),
    )


def _parse_product(data: Any) -> VEXProduct:
    if isinstance(data, str):
        return VEXProduct(id=data)
    if not isinstance(data, dict):
        raise ValueError("Statement product must be an object")
    return VEXProduct(id=_string(data, "@id"))


def _parse_statement(data: Any) -> VEXStatement:
    if not isinstance(data, dict):
        raise ValueError("VEX statement must be an object")

    status = _string(data, "status")
    try:
        parsed_status = VEXStatus(status)
    except ValueError:
        raise ValueError(f"Unknown VEX status '{status}'") from None

    products = data.get("products") or []
    if not isinstance(products, list):
        raise ValueError("Statement products must be a list")

    return VEXStatement(
        vulnerability=_parse_vulnerability(data.get("vulnerability") or {}),
        status=parsed_status,
        products=tuple(_parse_product(p) for p in products),
        justification=_string(data, "justification"),
        status_notes=_string(data, "status_notes"),
        impact_statement=_string(data, "impact_statement"),
        action_statement=_string(data, "action_statement"),
        timestamp=_string(data, "timestamp"),
    )


def parse_vex(data: bytes | str) -> VEXDocument:
    """Parses an OpenVEX document.

    Args:
        data: The raw JSON document. Envelopes must already be unwrapped.

    Returns:
        The parsed document, statements in document order.

    Raises:
        ValueError: The input is not JSON or not an OpenVEX document.
    """
    try:
        document = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Failed to parse VEX document: {e}") from e

    if not isinstance(document, dict):
        raise ValueError("Failed to parse VEX document: not a JSON object")

    statements = document.get("statements") or []
    if not isinstance(statements, list):
        raise ValueError("Failed to parse VEX document: bad statements")

    version = document.get("version") or 0
    if not isinstance(version, int) or isinstance(version, bool):
        raise ValueError("Field 'version' must be an integer")

    return VEXDocument(
        context=_string(document, "@context"),
        id=_string(document, "@id"),
        author=_string(document, "author"),
        role=_string(document, "role"),
        timestamp=_string(document, "timestamp"),
        last_updated=_string(document, "last_updated"),
        version=version,
        tooling=_string(document, "tooling"),
        statements=tuple(_parse_statement(s) for s in statements),
    )
