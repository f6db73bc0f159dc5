# src/edge_gateway/api/dependencies.py
from fastapi import Request
from typing import Annotated
from fastapi import Depends
from ..core.queries import GatewayQueries


async def get_queries(request: Request) -> GatewayQueries:
    return request.app.state.components.queries

# Type definitions for dependencies
QueriesDependency = Annotated[GatewayQueries, Depends(get_queries)]
