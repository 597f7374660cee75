from starlette.exceptions import HTTPException
from starlette.responses import Response
from starlette.staticfiles import StaticFiles
from starlette.types import Scope


class SPA(StaticFiles):
    """
    Static bundle of the web client. Paths that match no file are answered
    with the index page so the client side router can handle them, except
    for the API and websocket prefixes which keep their 404.
    """

    reserved_prefixes = ("api", "ws")

    def __init__(self, directory: str, index: str = "index.html"):
        super(SPA, self).__init__(directory=directory)
        self.index = index

    async def get_response(self, path: str, scope: Scope) -> Response:
        if path.split("/", 1)[0] in self.reserved_prefixes:
            raise HTTPException(status_code=404)
        try:
            return await super(SPA, self).get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code != 404:
                raise
        return await super(SPA, self).get_response(self.index, scope)
