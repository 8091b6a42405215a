from __future__ import annotations

from typing import Any

from pydantic import ValidationError as PydanticValidationError


class AppError(Exception):
    """Base error for failures surfaced to API callers."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Erro interno do servidor"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def details(self) -> Any:
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Não autorizado"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Acesso negado"


class NotFoundError(AppError):
    """Raised for missing records and for records the principal may not touch."""

    status_code = 404
    code = "NOT_FOUND"
    default_message = "Recurso não encontrado"

    def __init__(self, message: str | None = None, resource: str | None = None) -> None:
        self.resource = resource
        super().__init__(message)


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Dados inválidos"

    def __init__(self, message: str | None = None, fields: dict[str, list[str]] | None = None) -> None:
        self.fields = fields or {}
        super().__init__(message)

    @property
    def details(self) -> Any:
        return self.fields or None

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> ValidationError:
        fields: dict[str, list[str]] = {}
        for error in exc.errors():
            path = ".".join(str(part) for part in error.get("loc", ()))
            message = str(error.get("msg", ""))
            if message.startswith("Value error, "):
                message = message[len("Value error, ") :]
            fields.setdefault(path, []).append(message)
        return cls(fields=fields)

    @classmethod
    def for_field(cls, field: str, message: str) -> ValidationError:
        return cls(message, fields={field: [message]})


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflito de dados"

    def __init__(self, message: str | None = None, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)
