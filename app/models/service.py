# app/models/service.py
# Catalog rows are managed elsewhere; orders only reference them.
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer
from app.db.session import Base
from app.models.wallet import new_id


class Service(Base):
    __tablename__ = "service"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128))
    status: Mapped[int] = mapped_column(Integer, default=1)     # 1=active
