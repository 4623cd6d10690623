from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from .models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./trip-service.db")


@lru_cache(maxsize=8)
def _engine(url: str) -> Engine:
    eng = create_engine(url, pool_pre_ping=True)
    Base.metadata.create_all(eng)
    return eng


def get_engine() -> Engine:
    return _engine(DATABASE_URL)


def get_company_id(x_company_id: Annotated[str | None, Header()] = None) -> str:
    if not x_company_id:
        raise HTTPException(status_code=400, detail="Missing X-Company-Id header")
    return x_company_id


def get_tenant_engine(
    company_id: Annotated[str, Depends(get_company_id)],
    engine: Annotated[Engine, Depends(get_engine)],
) -> Engine:
    # Every row carries company_id; one logical database serves all tenants.
    return engine
