"""FastAPI application and routes."""
from .main import app
from .schemas import PaymentConfirmationResponse, ReconciliationResponse

__all__ = ["app", "PaymentConfirmationResponse", "ReconciliationResponse"]
