from fastapi import FastAPI
from starlette.requests import HTTPConnection


def get_application(connection: HTTPConnection) -> FastAPI:
    return connection.app
