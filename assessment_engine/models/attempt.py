from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, ForeignKey, func
from assessment_engine.db.deps import Base


class AssessmentTake(Base):
    __tablename__ = "student_assessments_take"

    id = Column(Integer, primary_key=True, autoincrement=True)
    assigned_assessment_id = Column(
        Integer, ForeignKey("assigned_assessments.id"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False, index=True)
    # Set once when a timed attempt starts; source of truth for elapsed time
    started_at = Column(DateTime(timezone=True), nullable=True)
    # Null until graded; stays null for manually graded submissions
    score = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AssessmentAnswer(Base):
    __tablename__ = "student_assessments_answer"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column(
        Integer, ForeignKey("student_assessments_take.id"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False)
    question_index = Column(Integer, nullable=False)
    answer = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
