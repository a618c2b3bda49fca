from __future__ import annotations

from fastapi.routing import APIRoute
from starlette.requests import Request

from schoolmarks.request_context import current_client_ip, current_endpoint


def resolve_client_ip(request: Request) -> str | None:
    forwarded = request.headers.get('x-forwarded-for', '')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


class EndpointNameRoute(APIRoute):
    """Labels slow-query logs with the endpoint and exposes the caller IP to audit writes."""

    def get_route_handler(self):
        original_handler = super().get_route_handler()

        async def custom_handler(request: Request):
            endpoint_token = current_endpoint.set(f"{request.method} {self.path}")
            ip_token = current_client_ip.set(resolve_client_ip(request))
            try:
                return await original_handler(request)
            finally:
                current_client_ip.reset(ip_token)
                current_endpoint.reset(endpoint_token)

        return custom_handler
