# models/base.py
import re

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import DeclarativeBase, declared_attr

from utils.clock import utcnow


class Base(DeclarativeBase):
     """
     Base class for all SQLAlchemy models.
     Provides common configuration and mixins.
     """

     @declared_attr.directive
     def __tablename__(cls) -> str:
          """
          Automatically generate table name from class name.
          Example: ReceiptRecord -> receipt_records
          """
          name = re.sub(r'(?<!^)(?=[A-Z])', '_', cls.__name__).lower()
          # Pluralize (simple version)
          if name.endswith('y'):
               return name[:-1] + 'ies'
          elif name.endswith('s'):
               return name + 'es'
          return name + 's'


class TimestampMixin:
     """
     created_at is assigned from the application clock (not the database) so that
     validity windows are measured against the same clock that checks them.
     """
     created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
     updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=True)
