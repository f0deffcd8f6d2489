from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text  # noqa: F401
from sqlalchemy.orm import declarative_base

Base = declarative_base()
