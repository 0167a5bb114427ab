from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, func
from assessment_engine.db.deps import Base


class Assessment(Base):
    __tablename__ = "assessments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False, default="")
    description = Column(Text, nullable=True)
    # "Quiz" | "Assignment"
    type = Column(String, nullable=False, default="Quiz")
    # list[{activityType, question, correctAnswer?, choices?, matchingPairs?, points?}]
    questions = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AssignedAssessment(Base):
    __tablename__ = "assigned_assessments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    assessment_id = Column(Integer, ForeignKey("assessments.id"), nullable=False)
    section_id = Column(Integer, nullable=True)
    allowed_attempts = Column(Integer, nullable=False, default=1)
    # 0 means untimed
    time_limit_minutes = Column(Integer, nullable=False, default=0)
    deadline = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
