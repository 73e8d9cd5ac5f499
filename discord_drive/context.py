import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from cryptography.fernet import Fernet

from .codec import build_cipher
from .config import Config
from .registry import PartRegistry
from .senders import PlatformSender


@dataclass
class DriveContext:
    """Everything a drive component needs, built once at startup and passed in."""

    config: Config
    registry: PartRegistry
    primary: PlatformSender
    backup: Optional[PlatformSender] = None
    cipher: Optional[Fernet] = None
    clock: Callable[[], float] = time.time

    @classmethod
    def build(cls, config: Config, registry: PartRegistry, primary: PlatformSender,
              backup: Optional[PlatformSender] = None, clock: Callable[[], float] = time.time) -> "DriveContext":
        cipher = build_cipher(config.encryption_key) if config.encryption_key else None
        return cls(config=config, registry=registry, primary=primary, backup=backup, cipher=cipher, clock=clock)

    @property
    def senders(self) -> Dict[str, PlatformSender]:
        found = {self.primary.platform: self.primary}
        if self.backup is not None:
            found[self.backup.platform] = self.backup
        return found

    def sender_for(self, platform: str) -> Optional[PlatformSender]:
        return self.senders.get(platform)

    async def close(self):
        for sender in self.senders.values():
            await sender.close()
