from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, Request

from checkout.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(services: Services = Depends(get_services)):
    async with services.session_factory() as db:
        yield db


def require_operator(
    services: Services = Depends(get_services),
    x_operator_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
) -> None:
    """Guard operator endpoints with JOB_PROCESSOR_TOKEN when it is set."""
    expected = services.settings.job_processor_token
    if expected and (x_operator_token or token) != expected:
        raise HTTPException(status_code=401, detail="Invalid operator token")
