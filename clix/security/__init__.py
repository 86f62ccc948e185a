"""
Security checks for stored and executed commands.

- validator: dangerous-pattern and approval-requirement detection
- sanitizer: cleansing of untrusted text before storage
"""

from .validator import (
    SecurityValidator,
    SecurityCheck,
    StepSecurityReport,
    WorkflowSecurityReport,
    get_security_recommendations,
)
from .sanitizer import (
    sanitize_command,
    sanitize_variable_name,
    sanitize_variable_value,
    sanitize_file_path,
    sanitize_user_input,
    sanitize_json_input,
)

__all__ = [
    # Validator
    "SecurityValidator",
    "SecurityCheck",
    "StepSecurityReport",
    "WorkflowSecurityReport",
    "get_security_recommendations",
    # Sanitizer
    "sanitize_command",
    "sanitize_variable_name",
    "sanitize_variable_value",
    "sanitize_file_path",
    "sanitize_user_input",
    "sanitize_json_input",
]
