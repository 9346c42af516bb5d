from grade_engine.domains.grading.aggregator import MissingData, MissingPolicy, ScoreEntry, aggregate
from grade_engine.domains.grading.compiled import CompiledComponent, CompiledConfigCache, CompiledFormula
from grade_engine.domains.grading.conditions import evaluate_conditions
from grade_engine.domains.grading.engine import GradeResult, compute_final_grade
from grade_engine.domains.grading.expression import evaluate, parse_expression
from grade_engine.domains.grading.rounding import RoundingRule, classify, round_grade

__all__ = [
    "MissingData", "MissingPolicy", "ScoreEntry", "aggregate",
    "CompiledComponent", "CompiledConfigCache", "CompiledFormula",
    "evaluate_conditions",
    "GradeResult", "compute_final_grade",
    "evaluate", "parse_expression",
    "RoundingRule", "classify", "round_grade",
]
