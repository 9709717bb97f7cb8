"""Versioned rule storage.

This module keeps authored rules and their versions, scoped to an owner:

- Creating a rule creates version 1.0
- Saving a rule overwrites one version in place
- Saving as a new version bumps the head version by 0.1
- Deleting the head version promotes the latest remaining version
- Deleting the last version deletes the rule
- Annotated evaluation results can be recorded per rule version

Example:
    >>> from decisionhub.store.rules import RuleStore
    >>> store = RuleStore()
    >>> rule = store.create_rule("user-1", title="Loan interest", condition=graph)
    >>> store.create_version(rule.rule_id, "user-1", {"description": "tweaked"}).version
    '1.1'
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from decisionhub.core.context import EvaluationResult

logger = logging.getLogger(__name__)

INITIAL_VERSION = "1.0"
VERSION_STEP = Decimal("0.1")
SEARCH_LIMIT = 40

EDITABLE_FIELDS = ("title", "description", "input_attributes", "output_attributes", "condition")


class RuleAccessError(PermissionError):
    """Raised when a caller does not own the rule it addresses."""


def _version_key(version: str) -> Decimal:
    try:
        return Decimal(version)
    except InvalidOperation:
        raise ValueError(f"Invalid rule version: {version!r}")


def next_version(version: str) -> str:
    """Bump a version by 0.1, e.g. ``"1.9"`` to ``"2.0"``."""
    return str((_version_key(version) + VERSION_STEP).quantize(VERSION_STEP))


def normalize_version(version: Any) -> str:
    """Render a version as one decimal place, e.g. ``1`` to ``"1.0"``."""
    return str(_version_key(str(version)).quantize(VERSION_STEP))


@dataclass
class RuleRecord:
    """One version of an authored rule.

    Attributes:
        rule_id: Rule identifier shared by all versions.
        owner_id: Owning user.
        title: Rule title.
        description: Rule description.
        input_attributes: Declared input attribute names.
        output_attributes: Declared output attribute names.
        condition: Rule graph wire document.
        version: Version string, one decimal place.
        created_at: Creation timestamp of this version.
        updated_at: Last modification timestamp of this version.
    """

    rule_id: str
    owner_id: str
    title: str
    description: str = ""
    input_attributes: List[str] = field(default_factory=list)
    output_attributes: List[str] = field(default_factory=list)
    condition: Dict[str, Any] = field(default_factory=dict)
    version: str = INITIAL_VERSION
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert rule record to dictionary for serialization."""
        return {
            "rule_id": self.rule_id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "input_attributes": list(self.input_attributes),
            "output_attributes": list(self.output_attributes),
            "condition": self.condition,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleRecord":
        """Create rule record from dictionary.

        A ``condition`` stored as a JSON string is decoded.
        """
        condition = data.get("condition") or {}
        if isinstance(condition, str):
            condition = json.loads(condition)
        return cls(
            rule_id=data["rule_id"],
            owner_id=data["owner_id"],
            title=data["title"],
            description=data.get("description", ""),
            input_attributes=list(data.get("input_attributes", [])),
            output_attributes=list(data.get("output_attributes", [])),
            condition=condition,
            version=normalize_version(data.get("version", INITIAL_VERSION)),
            created_at=(
                datetime.fromisoformat(data["created_at"])
                if data.get("created_at")
                else datetime.now(timezone.utc)
            ),
            updated_at=(
                datetime.fromisoformat(data["updated_at"])
                if data.get("updated_at")
                else datetime.now(timezone.utc)
            ),
        )

    def copy(self) -> "RuleRecord":
        return copy.deepcopy(self)


class RuleStore:
    """Stores rules, their versions and recorded evaluations.

    Records handed out are copies; changing them does not change the store.

    Attributes:
        storage_path: Optional directory for JSON persistence.
        _heads: Current version of each rule, keyed by rule_id.
        _versions: All versions of each rule, keyed by rule_id then version.
        _evaluations: Recorded evaluation summaries, keyed by rule_id.

    Example:
        >>> store = RuleStore(storage_path=Path("./rules"))
        >>> rule = store.create_rule("user-1", title="Loan interest", condition=graph)
        >>> head, versions = store.get_rule(rule.rule_id, "user-1")
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        """Initialize the rule store.

        Args:
            storage_path: Optional path for file-based persistence. If provided,
                rules are saved to and loaded from this directory.
        """
        self.storage_path = storage_path
        self._heads: Dict[str, RuleRecord] = {}
        self._versions: Dict[str, Dict[str, RuleRecord]] = {}
        self._evaluations: Dict[str, List[Dict[str, Any]]] = {}

        if self.storage_path:
            self.storage_path = Path(self.storage_path)
            self.storage_path.mkdir(parents=True, exist_ok=True)
            self._load_from_storage()

        logger.info(
            "RuleStore initialized",
            extra={
                "storage_path": str(self.storage_path) if self.storage_path else None,
                "rule_count": len(self._heads),
            },
        )

    def _load_from_storage(self) -> None:
        """Load rules from storage directory."""
        rules_file = self.storage_path / "rules.json"
        if not rules_file.exists():
            return

        try:
            with open(rules_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            for rule_data in data.get("versions", []):
                record = RuleRecord.from_dict(rule_data)
                self._versions.setdefault(record.rule_id, {})[record.version] = record
            for rule_data in data.get("heads", []):
                record = RuleRecord.from_dict(rule_data)
                self._heads[record.rule_id] = record
            self._evaluations = data.get("evaluations", {})
            logger.debug(
                "Loaded rules from storage",
                extra={"count": len(self._heads)},
            )
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(
                "Failed to load rules from storage",
                extra={"error": str(e)},
            )

    def _save_to_storage(self) -> None:
        """Save rules to storage directory."""
        if not self.storage_path:
            return

        rules_file = self.storage_path / "rules.json"
        try:
            data = {
                "heads": [r.to_dict() for r in self._heads.values()],
                "versions": [
                    r.to_dict() for versions in self._versions.values() for r in versions.values()
                ],
                "evaluations": self._evaluations,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            with open(rules_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            logger.debug(
                "Saved rules to storage",
                extra={"count": len(self._heads)},
            )
        except (IOError, TypeError, ValueError) as e:
            logger.error(
                "Failed to save rules to storage",
                extra={"error": str(e)},
            )

    def create_rule(
        self,
        owner_id: str,
        title: str,
        description: str = "",
        input_attributes: Optional[List[str]] = None,
        output_attributes: Optional[List[str]] = None,
        condition: Optional[Dict[str, Any]] = None,
    ) -> RuleRecord:
        """Create a rule at version 1.0.

        Returns:
            Copy of the created rule.
        """
        record = RuleRecord(
            rule_id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            description=description,
            input_attributes=list(input_attributes or []),
            output_attributes=list(output_attributes or []),
            condition=copy.deepcopy(condition or {}),
        )

        self._heads[record.rule_id] = record
        self._versions[record.rule_id] = {record.version: record.copy()}
        self._save_to_storage()

        logger.info(
            "Created rule",
            extra={"rule_id": record.rule_id, "owner_id": owner_id},
        )

        return record.copy()

    def list_rules(self, owner_id: str) -> List[RuleRecord]:
        """Get the head version of every rule owned by ``owner_id``."""
        rules = [r for r in self._heads.values() if r.owner_id == owner_id]
        return [r.copy() for r in sorted(rules, key=lambda r: r.created_at)]

    def search(self, owner_id: str, title: str, limit: int = SEARCH_LIMIT) -> List[RuleRecord]:
        """Find owned rules whose title contains ``title``, ignoring case."""
        needle = (title or "").lower()
        matches = [r for r in self.list_rules(owner_id) if needle in r.title.lower()]
        return matches[:limit]

    def get_rule(
        self,
        rule_id: str,
        owner_id: str,
        version: Optional[str] = None,
    ) -> Tuple[RuleRecord, List[str]]:
        """Get a rule version and the list of all its versions.

        Args:
            rule_id: Rule to fetch.
            owner_id: Caller, who must own the rule.
            version: Version to fetch; the head version when omitted.

        Returns:
            Copy of the record and the sorted version strings.

        Raises:
            KeyError: If the rule or version does not exist.
            RuleAccessError: If ``owner_id`` does not own the rule.
        """
        head = self._get_owned_or_raise(rule_id, owner_id)
        versions = self._versions[rule_id]
        if version is None:
            record = head
        else:
            record = versions.get(normalize_version(version))
            if record is None:
                raise KeyError(f"Rule {rule_id} has no version {version}")
        return record.copy(), self._sorted_versions(rule_id)

    def update_rule(
        self,
        rule_id: str,
        owner_id: str,
        changes: Dict[str, Any],
        version: Optional[str] = None,
    ) -> Tuple[RuleRecord, List[str]]:
        """Overwrite one version in place.

        Updating the head version updates the head as well.

        Returns:
            Copy of the updated version and the sorted version strings.

        Raises:
            KeyError: If the rule or version does not exist.
            RuleAccessError: If ``owner_id`` does not own the rule.
        """
        head = self._get_owned_or_raise(rule_id, owner_id)
        target_version = head.version if version is None else normalize_version(version)
        record = self._versions[rule_id].get(target_version)
        if record is None:
            raise KeyError(f"Rule {rule_id} has no version {version}")

        self._apply_changes(record, changes)
        if target_version == head.version:
            self._heads[rule_id] = record.copy()
        self._save_to_storage()

        logger.info(
            "Updated rule version",
            extra={"rule_id": rule_id, "version": target_version},
        )

        return record.copy(), self._sorted_versions(rule_id)

    def create_version(self, rule_id: str, owner_id: str, changes: Dict[str, Any]) -> RuleRecord:
        """Save ``changes`` on top of the head as a new version (head + 0.1).

        Returns:
            Copy of the new head version.

        Raises:
            KeyError: If the rule does not exist.
            RuleAccessError: If ``owner_id`` does not own the rule.
        """
        head = self._get_owned_or_raise(rule_id, owner_id)
        record = head.copy()
        record.version = next_version(self._sorted_versions(rule_id)[-1])
        record.created_at = datetime.now(timezone.utc)
        self._apply_changes(record, changes)

        self._heads[rule_id] = record
        self._versions[rule_id][record.version] = record.copy()
        self._save_to_storage()

        logger.info(
            "Created rule version",
            extra={"rule_id": rule_id, "version": record.version},
        )

        return record.copy()

    def delete_version(self, rule_id: str, owner_id: str, version: str) -> Optional[Tuple[RuleRecord, List[str]]]:
        """Delete one version of a rule.

        Deleting the head promotes the latest remaining version; deleting the
        only version deletes the rule.

        Returns:
            The head and remaining versions, or None if the rule was deleted.

        Raises:
            KeyError: If the rule or version does not exist.
            RuleAccessError: If ``owner_id`` does not own the rule.
        """
        head = self._get_owned_or_raise(rule_id, owner_id)
        version = normalize_version(version)
        versions = self._versions[rule_id]
        if version not in versions:
            raise KeyError(f"Rule {rule_id} has no version {version}")

        del versions[version]

        if not versions:
            del self._heads[rule_id]
            del self._versions[rule_id]
            self._evaluations.pop(rule_id, None)
            self._save_to_storage()
            logger.info("Deleted rule", extra={"rule_id": rule_id})
            return None

        if version == head.version:
            latest = self._sorted_versions(rule_id)[-1]
            self._heads[rule_id] = versions[latest].copy()
            logger.info(
                "Promoted latest rule version",
                extra={"rule_id": rule_id, "version": latest},
            )

        self._save_to_storage()
        return self._heads[rule_id].copy(), self._sorted_versions(rule_id)

    def save_evaluation(self, rule_id: str, version: str, result: "EvaluationResult") -> Dict[str, Any]:
        """Record an evaluation result against a rule version.

        Raises:
            KeyError: If the rule does not exist.
        """
        if rule_id not in self._heads:
            raise KeyError(f"Rule not found: {rule_id}")

        entry = {
            "version": normalize_version(version),
            "evaluated_at": datetime.now(timezone.utc).isoformat(),
            **result.to_dict(),
        }
        self._evaluations.setdefault(rule_id, []).append(entry)
        self._save_to_storage()
        return entry

    def get_evaluations(self, rule_id: str) -> List[Dict[str, Any]]:
        """Get recorded evaluations for a rule, oldest first."""
        return copy.deepcopy(self._evaluations.get(rule_id, []))

    def _apply_changes(self, record: RuleRecord, changes: Dict[str, Any]) -> None:
        for key, value in changes.items():
            if key not in EDITABLE_FIELDS:
                raise ValueError(f"Field {key!r} cannot be changed. Editable fields: {EDITABLE_FIELDS}")
            if key == "condition" and isinstance(value, str):
                value = json.loads(value)
            setattr(record, key, copy.deepcopy(value))
        record.updated_at = datetime.now(timezone.utc)

    def _sorted_versions(self, rule_id: str) -> List[str]:
        return sorted(self._versions.get(rule_id, {}), key=_version_key)

    def _get_owned_or_raise(self, rule_id: str, owner_id: str) -> RuleRecord:
        """Get the head of a rule, checking ownership.

        Raises:
            KeyError: If rule_id not found.
            RuleAccessError: If the rule belongs to someone else.
        """
        head = self._heads.get(rule_id)
        if head is None:
            raise KeyError(f"Rule not found: {rule_id}")
        if head.owner_id != owner_id:
            raise RuleAccessError(f"You are not owner of rule {rule_id}")
        return head
