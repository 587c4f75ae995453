"""
Declarative base for all ridesync models.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
