from dataclasses import dataclass


@dataclass(slots=True)
class Principal:
    subject: str
    role: str = "user"
    email: str | None = None

    @property
    def user_id(self) -> str:
        return self.subject
