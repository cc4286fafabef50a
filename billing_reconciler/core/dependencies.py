from fastapi import Depends, Request

from .container import ApplicationContainer


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_persistence_gateway(container: ApplicationContainer = Depends(get_container)):
    return container.persistence


def get_auth_service(container: ApplicationContainer = Depends(get_container)):
    return container.auth_service


def get_webhook_reconciler(container: ApplicationContainer = Depends(get_container)):
    return container.webhook_reconciler


def get_receipt_validator(container: ApplicationContainer = Depends(get_container)):
    return container.receipt_validator


def get_notification_processor(container: ApplicationContainer = Depends(get_container)):
    return container.notification_processor


def get_subscription_service(container: ApplicationContainer = Depends(get_container)):
    return container.subscription_service
