from __future__ import annotations

from typing import Any, Callable, Union

import httpx

Handler = Callable[[httpx.Request], httpx.Response]
Route = Union[httpx.Response, Handler, list]


class ProviderStub:
    """
    Canned upstream for `httpx.MockTransport`.

    Routes are keyed by "METHOD https://host/path" (query string ignored). A
    route can be a response, a list of responses served in order (the last
    one repeats), or a callable receiving the request.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Route] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, route: Route) -> None:
        self.routes[f"{method.upper()} {url}"] = route

    def json(self, method: str, url: str, payload: Any, *, status_code: int = 200, headers: dict | None = None) -> None:
        self.add(method, url, httpx.Response(status_code, json=payload, headers=headers))

    def calls(self, method: str, url: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method.upper() and _route_url(request) == url
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(f"{request.method} {_route_url(request)}")
        if route is None:
            return httpx.Response(404, json={"error": "unrouted", "url": str(request.url)})
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(route, httpx.Response):
            # A fresh copy per call; httpx consumes response streams.
            return httpx.Response(route.status_code, headers=route.headers, content=route.content)
        return route(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _route_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"
