class WebpilotError(Exception):
    """Base class for orchestrator errors."""


class RunNotFound(WebpilotError):
    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class OperatorConflict(WebpilotError):
    """Administrative mutation rejected because the run is in the wrong state."""


class InvalidTransition(OperatorConflict):
    def __init__(self, run_id: str, from_status: str, to_status: str):
        super().__init__(f"Run {run_id} cannot move from {from_status} to {to_status}")
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status


class PlannerError(WebpilotError):
    """Planner call timed out or returned something unusable. Transient."""


class ActuatorError(WebpilotError):
    """Browser action failed. Transient until the step's attempt budget runs out."""


class SearchError(WebpilotError):
    """Web search failed. The run carries on without results."""


class PolicyBlocked(WebpilotError):
    def __init__(self, url: str, reason: str = "blocked by policy"):
        super().__init__(f"{reason}: {url}")
        self.url = url
        self.reason = reason
