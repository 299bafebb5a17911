from .logic import SessionStatus, TeleopSession

__version__ = "0.1.0"

__all__ = ["SessionStatus", "TeleopSession", "__version__"]
