from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Caller identity for one request. Passed explicitly into every workflow call."""

    id: str
    role: str
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
