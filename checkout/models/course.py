import uuid

from sqlalchemy import Column, DateTime, Integer, String, Text

from checkout.db.base_class import Base


class CourseInstance(Base):
    __tablename__ = "course_instances"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=True)
    location = Column(String(200), nullable=True)
    # Per participant, minor currency units
    price = Column(Integer, nullable=False, default=0)
    max_participants = Column(Integer, nullable=True)
    current_participants = Column(Integer, nullable=False, default=0)
