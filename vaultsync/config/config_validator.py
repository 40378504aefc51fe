"""
Configuration validation for startup safety.

- Range checks for numeric parameters
- Address format checks
- Warnings for configurations that hammer the RPC provider or act blindly
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_utils import is_address, is_hex_address

logger = logging.getLogger("vaultsync")


class ValidationSeverity(Enum):
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logs warning but allows startup
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def has_errors(self) -> bool:
        return any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Checks:
    - numeric values within safe ranges
    - contract addresses well formed
    - risky but valid combinations
    """

    # (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "log_window_blocks": (10, 50_000),
        "mode_lookback_blocks": (1, 10_000),
        "inter_query_pause_sec": (0.0, 10.0),
        "retry_max_attempts": (1, 10),
        "retry_base_delay_ms": (0, 60_000),
        "http_timeout": (1.0, 120.0),
        "reconcile_interval_sec": (5.0, 3600.0),
        "rebalance_interval_sec": (5.0, 3600.0),
        "best_chain_interval_sec": (5.0, 3600.0),
        "mode_interval_sec": (5.0, 3600.0),
        "oracle_sync_interval_sec": (5.0, 3600.0),
        "confirmation_timeout_sec": (5.0, 1800.0),
        "switch_revert_backoff_sec": (0.0, 86_400.0),
        "dedup_window_sec": (0.0, 86_400.0),
    }

    ADDRESS_FIELDS: List[str] = ["vault_address", "oracle_address", "cross_chain_address"]

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        self._custom_validators.append(validator)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._validate_addresses(cfg))
        issues.extend(self._check_risky_configs(cfg))
        for validator in self._custom_validators:
            issues.extend(validator(cfg) or [])
        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                continue
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _validate_addresses(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name in self.ADDRESS_FIELDS:
            value = getattr(cfg, field_name, None)
            if value and not is_address(value) and is_hex_address(value):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' fails the EIP-55 checksum: {value!r}",
                    severity=ValidationSeverity.WARNING,
                    value=value,
                ))
            elif not value or not is_hex_address(value):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' is not a valid address: {value!r}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
        user = getattr(cfg, "user_address", None)
        if user and not is_address(user):
            issues.append(ValidationIssue(
                field="user_address",
                message=f"'user_address' is not a valid address: {user!r}",
                severity=ValidationSeverity.ERROR,
                value=user,
            ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []

        if not getattr(cfg, "private_key", None):
            issues.append(ValidationIssue(
                field="private_key",
                message="No signing key: running read-only (no rebalance, sync or chain switch)",
                severity=ValidationSeverity.WARNING,
                suggestion="Set VS_PRIVATE_KEY to enable corrective actions",
            ))
            if not getattr(cfg, "user_address", None):
                issues.append(ValidationIssue(
                    field="user_address",
                    message="Neither VS_USER_ADDRESS nor VS_PRIVATE_KEY set; risk profile cannot be read",
                    severity=ValidationSeverity.WARNING,
                ))

        # Worst-case backoff of one read versus the loop interval
        attempts = int(getattr(cfg, "retry_max_attempts", 5))
        base_ms = float(getattr(cfg, "retry_base_delay_ms", 2000))
        worst_sec = sum(base_ms * (2 ** i) for i in range(max(0, attempts - 1))) / 1000.0
        interval = float(getattr(cfg, "reconcile_interval_sec", 30.0))
        if worst_sec > interval * 4:
            issues.append(ValidationIssue(
                field="retry_max_attempts",
                message=f"Worst-case retry backoff ({worst_sec:.0f}s) far exceeds the reconcile interval ({interval:.0f}s)",
                severity=ValidationSeverity.WARNING,
                value=attempts,
            ))

        window = int(getattr(cfg, "log_window_blocks", 2000))
        if window > 10_000:
            issues.append(ValidationIssue(
                field="log_window_blocks",
                message=f"Large log window ({window} blocks) may be rejected or throttled by the provider",
                severity=ValidationSeverity.WARNING,
                value=window,
            ))

        cooldown = float(getattr(cfg, "rebalance_cooldown_sec", 5.0))
        if cooldown < 1.0:
            issues.append(ValidationIssue(
                field="rebalance_cooldown_sec",
                message="Rebalance cooldown under 1s may thrash on noisy price reads",
                severity=ValidationSeverity.WARNING,
                value=cooldown,
            ))
        return issues


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance: Optional[logging.Logger] = None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(cfg)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")
    return result.valid
