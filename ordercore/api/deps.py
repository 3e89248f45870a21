from fastapi import Request
from ordercore.db.session import SessionLocal
from ordercore.payments.gateway import ReconciliationGateway
from ordercore.services.notifications import Notifier

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Collaborators are built once at startup (see main.py) and kept on app.state
def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier

def get_gateway(request: Request) -> ReconciliationGateway:
    return request.app.state.gateway
