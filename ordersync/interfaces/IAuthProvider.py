from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

class Principal(BaseModel):
    id: str
    name: str = ""
    email: str = ""

class IAuthProvider(ABC):
    @abstractmethod
    def current_principal(self) -> Optional[Principal]:
        pass
