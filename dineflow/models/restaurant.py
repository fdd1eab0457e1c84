"""
Modelo Restaurant (mínimo): el CRUD completo vive fuera del motor de facturación
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.orm import relationship

from dineflow.core.database import Base
from dineflow.core.dates import utcnow


class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)

    subscription = relationship("Subscription", back_populates="restaurant", uselist=False)

    def __repr__(self):
        return f"<Restaurant #{self.id} {self.name}>"
