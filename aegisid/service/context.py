from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from aegisid.service.devices import DeviceInfo, device_fingerprint, parse_user_agent


@dataclass(frozen=True)
class RequestContext:
    """Caller facts every core operation receives explicitly.

    Time is not part of the context: services read it from their injected
    clock, so tests step that clock instead.
    """

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    device: DeviceInfo = field(init=False)
    device_fingerprint: str = field(init=False)

    def __post_init__(self) -> None:
        # frozen dataclass: derived fields are set through object.__setattr__
        object.__setattr__(self, "device", parse_user_agent(self.user_agent))
        object.__setattr__(
            self,
            "device_fingerprint",
            device_fingerprint(self.user_agent, self.accept_language),
        )
