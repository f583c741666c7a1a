from playstream.modules.sessions.dcv_controller import SessionController
from playstream.modules.sessions.schemas import SessionEndpoint, StopSessionResult, TlsConfigResult

__all__ = ["SessionController", "SessionEndpoint", "StopSessionResult", "TlsConfigResult"]
