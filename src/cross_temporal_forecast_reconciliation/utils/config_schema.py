"""Schema validation for reconciliation configuration files.

Every section of the YAML file is checked against a nested schema of type,
range and membership rules. All violations are collected and reported
together; valid files are returned with defaults filled in.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

NUMBER = (int, float)


def check_aggregation_matrix(path: str, value: Any) -> List[str]:
    """Aggregation matrices must be rectangular lists of 0/1 rows."""
    if not value or not all(isinstance(row, list) for row in value):
        return [f"{path} must be a non-empty list of rows"]
    errors = []
    width = len(value[0])
    for i, row in enumerate(value):
        if len(row) != width:
            errors.append(f"{path} row {i} has {len(row)} entries, expected {width}")
        elif any(isinstance(entry, bool) or entry not in (0, 1) for entry in row):
            errors.append(f"{path} row {i} must contain only 0/1 entries")
    return errors


def check_temporal_orders(path: str, value: Any) -> List[str]:
    """Orders must be unique positive integers; divisibility by m is checked by the descriptor."""
    errors = [
        f"{path}[{i}] must be a positive integer, got {k!r}"
        for i, k in enumerate(value)
        if isinstance(k, bool) or not isinstance(k, int) or k < 1
    ]
    if len(set(map(repr, value))) != len(value):
        errors.append(f"{path} contains duplicate orders")
    return errors


def check_log_file(path: str, value: Any) -> List[str]:
    """The nearest existing directory of the log file must be writable; nothing is created here."""
    parent = Path(value).parent
    while not parent.exists() and parent != parent.parent:
        parent = parent.parent
    if not os.access(parent, os.W_OK):
        return [f"{path} parent directory is not writable: {parent}"]
    return []


VALIDATORS: Dict[str, Callable[[str, Any], List[str]]] = {
    'aggregation_matrix': check_aggregation_matrix,
    'temporal_orders': check_temporal_orders,
    'log_file': check_log_file,
}


class ConfigSchema:
    """Nested schema of the configuration file."""

    @staticmethod
    def get_base_schema() -> Dict[str, Any]:
        """
        Schema of every known section.

        Each field maps to a rule dictionary with the keys ``required``,
        ``type``, ``nullable``, ``default``, ``min``/``max``,
        ``minlength``, ``allowed``, ``validator`` (a key of ``VALIDATORS``)
        and ``schema`` for nested sections.
        """
        return {
            'hierarchy': {
                'required': False,
                'type': dict,
                'default': {},
                'schema': {
                    'aggregation_matrix': {
                        'required': False,
                        'type': list,
                        'nullable': True,
                        'default': None,
                        'validator': 'aggregation_matrix'
                    },
                    'sparse_threshold': {'required': False, 'type': int, 'min': 1, 'default': 2000}
                }
            },
            'temporal': {
                'required': False,
                'type': dict,
                'nullable': True,
                'default': None,
                'schema': {
                    'm': {'required': True, 'type': int, 'min': 2, 'max': 100000},
                    'h': {'required': False, 'type': int, 'min': 1, 'default': 1},
                    'orders': {
                        'required': False,
                        'type': list,
                        'nullable': True,
                        'default': None,
                        'minlength': 1,
                        'validator': 'temporal_orders'
                    }
                }
            },
            'reconciliation': {
                'required': True,
                'type': dict,
                'schema': {
                    'covariance': {
                        'required': False,
                        'type': str,
                        'allowed': ['identity', 'structural', 'variance', 'pooled_variance',
                                    'sample', 'shrinkage', 'autocorrelation'],
                        'default': 'structural'
                    },
                    'composition': {
                        'required': False,
                        'type': str,
                        'allowed': ['simultaneous', 'temporal_then_cross', 'cross_then_temporal',
                                    'iterative', 'bottom_up'],
                        'default': 'simultaneous'
                    },
                    'nonnegative': {
                        'required': False,
                        'type': str,
                        'allowed': ['none', 'exact', 'heuristic'],
                        'default': 'none'
                    },
                    'regularization': {'required': False, 'type': NUMBER, 'min': 0.0, 'max': 1.0, 'default': 0.0},
                    'max_workers': {'required': False, 'type': int, 'nullable': True, 'min': 1, 'default': None},
                    'solver': {
                        'required': False,
                        'type': dict,
                        'default': {},
                        'schema': {
                            'max_iterations': {'required': False, 'type': int, 'min': 1, 'max': 10**7, 'default': 10000},
                            'tolerance': {'required': False, 'type': NUMBER, 'min': 1e-12, 'max': 1.0, 'default': 1e-6},
                            'polish': {'required': False, 'type': bool, 'default': True}
                        }
                    },
                    'iterative': {
                        'required': False,
                        'type': dict,
                        'default': {},
                        'schema': {
                            'max_iterations': {'required': False, 'type': int, 'min': 1, 'max': 10**5, 'default': 100},
                            'tolerance': {'required': False, 'type': NUMBER, 'min': 0.0, 'max': 1.0, 'default': 1e-5},
                            'norm': {
                                'required': False,
                                'type': str,
                                'allowed': ['inf', 'l1', 'l2'],
                                'default': 'inf'
                            },
                            'start': {
                                'required': False,
                                'type': str,
                                'allowed': ['temporal', 'cross_sectional'],
                                'default': 'temporal'
                            }
                        }
                    },
                    'bottom_up_axis': {
                        'required': False,
                        'type': str,
                        'allowed': ['temporal', 'cross_sectional'],
                        'default': 'cross_sectional'
                    }
                }
            },
            'logging': {
                'required': False,
                'type': dict,
                'default': {},
                'schema': {
                    'level': {
                        'required': False,
                        'type': str,
                        'allowed': ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        'default': 'INFO'
                    },
                    'file': {
                        'required': False,
                        'type': str,
                        'nullable': True,
                        'default': None,
                        'validator': 'log_file'
                    },
                    'format': {
                        'required': False,
                        'type': str,
                        'default': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
                    }
                }
            }
        }


class ConfigValidator:
    """Validates configuration mappings against :class:`ConfigSchema`."""

    def __init__(self):
        self.schema = ConfigSchema.get_base_schema()
        self.logger = logging.getLogger(__name__)

    def validate(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate a configuration and fill in defaults.

        Args:
            config: Parsed configuration mapping.

        Returns:
            New mapping with every known field present.

        Raises:
            ValueError: Listing every violation found.
        """
        validated, errors = self._section(dict(config), self.schema, "root")
        if errors:
            error_msg = "Configuration validation failed: " + "; ".join(errors)
            self.logger.error(error_msg)
            raise ValueError(error_msg)

        self.logger.info("Configuration validation successful")
        return validated

    def _section(self, config: Dict[str, Any], schema: Dict[str, Any], path: str) -> Tuple[Dict[str, Any], List[str]]:
        validated: Dict[str, Any] = {}
        errors: List[str] = []

        for name, rules in schema.items():
            field_path = f"{path}.{name}"
            if name in config:
                value, field_errors = self._field(config[name], rules, field_path)
                validated[name] = value
                errors.extend(field_errors)
            elif rules.get('required', False):
                errors.append(f"Required field missing: {field_path}")
            elif isinstance(rules.get('default'), dict) and 'schema' in rules:
                validated[name], nested_errors = self._section({}, rules['schema'], field_path)
                errors.extend(nested_errors)
            else:
                validated[name] = rules.get('default')

        unknown = sorted(set(config) - set(schema))
        if unknown:
            self.logger.warning(f"Ignoring unknown configuration fields in {path}: {unknown}")
        return validated, errors

    def _field(self, value: Any, rules: Dict[str, Any], path: str) -> Tuple[Any, List[str]]:
        if value is None:
            return None, ([] if rules.get('nullable', False) else [f"{path} cannot be null"])

        expected = rules.get('type')
        numeric = expected in (int, NUMBER)
        if expected and (not isinstance(value, expected) or (numeric and isinstance(value, bool))):
            type_name = getattr(expected, '__name__', 'number')
            return value, [f"{path} must be of type {type_name}, got {type(value).__name__}"]

        errors = []
        if numeric:
            if rules.get('min') is not None and value < rules['min']:
                errors.append(f"{path} must be >= {rules['min']}, got {value}")
            if rules.get('max') is not None and value > rules['max']:
                errors.append(f"{path} must be <= {rules['max']}, got {value}")
        if rules.get('minlength') is not None and len(value) < rules['minlength']:
            errors.append(f"{path} must have length >= {rules['minlength']}")
        if rules.get('allowed') is not None and value not in rules['allowed']:
            errors.append(f"{path} must be one of {rules['allowed']}, got {value}")
        if rules.get('validator'):
            errors.extend(VALIDATORS[rules['validator']](path, value))

        if rules.get('schema') and isinstance(value, dict):
            value, nested_errors = self._section(value, rules['schema'], path)
            errors.extend(nested_errors)
        return value, errors
