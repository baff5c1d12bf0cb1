from __future__ import annotations


class EngineError(RuntimeError):
    """Base des erreurs de l'engine."""


class ConfigError(EngineError):
    """Configuration absente ou invalide."""


class ExternalServiceError(EngineError):
    """Erreur transitoire d'un service externe (HTTP, timeout, payload). Retentée."""

    def __init__(self, service: str, message: str, status_code: int | None = None):
        self.service = service
        self.status_code = status_code
        if status_code is not None:
            super().__init__(f"{service} failed ({status_code}): {message}")
        else:
            super().__init__(f"{service} error: {message}")


class TerminalExecutionError(EngineError):
    """Erreur métier définitive : l'ordre passe en failed sans nouvel essai."""

    reason = "terminal_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.reason)


class NoBalanceError(TerminalExecutionError):
    reason = "no_token_balance"
