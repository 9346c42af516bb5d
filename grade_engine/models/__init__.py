from grade_engine.models.course_offering import CourseOffering, Enrollment
from grade_engine.models.assessment import Assessment, AssessmentScore
from grade_engine.models.grading import GradingComponent, GradingFormula
from grade_engine.models.final_grade import FinalGrade, ComputationLogEntry

__all__ = [
    "CourseOffering",
    "Enrollment",
    "Assessment",
    "AssessmentScore",
    "GradingComponent",
    "GradingFormula",
    "FinalGrade",
    "ComputationLogEntry",
]
