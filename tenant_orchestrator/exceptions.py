"""
Tenant Orchestrator - Exception Classes
Errors raised by provisioning components, rotation and export
"""


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors"""

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.error_code = error_code


class ValidationError(OrchestratorError):
    """Raised when an input such as a tenant name is malformed"""
    pass


class PrerequisiteError(OrchestratorError):
    """Raised when a required secret, file or installed component is missing"""
    pass


class ClusterError(OrchestratorError):
    """Base class for cluster control-plane failures"""
    pass


class ClusterUnavailableError(ClusterError):
    """Raised when the cluster API stays unreachable after retries"""
    pass


class ClusterAPIError(ClusterError):
    """Raised when the cluster API rejects a request"""

    def __init__(self, message: str, status_code: int = None, error_code: str = None):
        super().__init__(message, error_code)
        self.status_code = status_code


class DatabaseError(OrchestratorError):
    """Base class for database engine failures"""
    pass


class DatabaseUnavailableError(DatabaseError):
    """Raised when the database engine cannot be reached or refuses the login"""
    pass


class DatabaseStatementError(DatabaseError):
    """Raised when a DDL or GRANT statement is rejected"""
    pass


class TokenTimeoutError(OrchestratorError):
    """Raised when a service account token is never populated"""
    pass


class RotationAbortedError(OrchestratorError):
    """Raised when rotation stops before the credential store was touched"""
    pass


class ExportError(OrchestratorError):
    """Raised when a stored artifact cannot be exported"""
    pass
