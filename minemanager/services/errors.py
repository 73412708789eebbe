"""Error taxonomy shared by the orchestrator and the HTTP layer."""


class FleetError(Exception):
    """Base class for errors surfaced to callers with a structured message."""

    error_code = "fleet_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.error_code)
        self.message = message or self.error_code

    def to_dict(self) -> dict:
        return {"status": "error", "error": self.message, "error_code": self.error_code}


class InvalidRequest(FleetError):
    error_code = "invalid_request"
    status_code = 400


class NotFound(FleetError):
    error_code = "not_found"
    status_code = 404


class InvalidState(FleetError):
    error_code = "invalid_state"
    status_code = 409


class PortInUse(FleetError):
    error_code = "port_in_use"
    status_code = 409


class AlreadyBuilding(FleetError):
    error_code = "already_building"
    status_code = 409


class BinaryUnavailable(FleetError):
    error_code = "binary_unavailable"
    status_code = 502


class NoWorldsToBackup(FleetError):
    error_code = "no_worlds_to_backup"
    status_code = 400


class InvalidBackupConfig(FleetError):
    error_code = "invalid_backup_config"
    status_code = 400


class InvalidPortal(FleetError):
    error_code = "invalid_portal"
    status_code = 400


class ProcessSpawnFailure(FleetError):
    """Raised internally when the JVM cannot be launched; never reaches callers."""

    error_code = "process_spawn_failure"
    status_code = 500
