"""Questionnaire dependency graph validator.

Conditional visibility rules make a question depend on the answers to
other questions. This module validates that dependency graph so that a
question never (directly or transitively) depends on itself.
"""

from collections import defaultdict
from typing import Dict, List, Optional

from canvass.schemas.questionnaire import Questionnaire
from canvass.logging_config import get_logger

logger = get_logger(__name__)


class QuestionnaireStructureError(Exception):
    """Raised when questionnaire structure is invalid."""
    pass


class QuestionnaireValidator:
    """Service for validating questionnaire visibility dependencies."""

    @staticmethod
    def validate(questionnaire: Questionnaire) -> None:
        """Validate questionnaire structure.

        Checks:
        1. No circular visibility dependencies
        2. Questions do not depend on questions that appear after them
           (logged as a warning; the form still works but reads oddly)

        Args:
            questionnaire: Questionnaire to validate

        Raises:
            QuestionnaireStructureError: If structure is invalid

        Example:
            >>> questionnaire = loader.load("candidate_poll")
            >>> QuestionnaireValidator.validate(questionnaire)  # Raises if invalid
        """
        graph = QuestionnaireValidator._build_graph(questionnaire)

        cycle = QuestionnaireValidator._find_cycle(graph)
        if cycle:
            raise QuestionnaireStructureError(
                f"Questionnaire {questionnaire.id} contains circular visibility rules: "
                f"{' -> '.join(cycle)}"
            )

        position = {q.id: index for index, q in enumerate(questionnaire.iter_questions())}
        forward = [
            question_id
            for question_id, prerequisites in graph.items()
            if any(position.get(p, -1) > position[question_id] for p in prerequisites)
        ]
        if forward:
            logger.warning(f"Questions depending on later questions: {sorted(forward)}")

        logger.info(f"Questionnaire {questionnaire.id} validated successfully")

    @staticmethod
    def resolution_order(questionnaire: Questionnaire) -> List[str]:
        """Order question ids so every question follows its prerequisites.

        Questions keep their questionnaire order unless a visibility rule
        points forward, in which case the prerequisite is moved ahead.
        Assumes the graph is acyclic (see validate()).

        Returns:
            Every question id exactly once
        """
        graph = QuestionnaireValidator._build_graph(questionnaire)
        order: List[str] = []
        placed = set()

        def place(question_id: str) -> None:
            if question_id in placed:
                return
            placed.add(question_id)
            for prerequisite in graph.get(question_id, []):
                place(prerequisite)
            order.append(question_id)

        for question in questionnaire.iter_questions():
            place(question.id)
        return order

    @staticmethod
    def _build_graph(questionnaire: Questionnaire) -> Dict[str, List[str]]:
        """Build adjacency list of question -> prerequisite questions.

        Names in expressions that are not question ids are ignored.
        """
        known = {q.id for q in questionnaire.iter_questions()}
        graph = defaultdict(list)

        for question in questionnaire.iter_questions():
            if question.conditional is None:
                continue
            for reference in sorted(question.conditional.references()):
                if reference in known:
                    graph[question.id].append(reference)

        return graph

    @staticmethod
    def _find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
        """Detect a cycle using DFS.

        Returns:
            The question ids forming the cycle, or None
        """
        visited = set()
        stack: List[str] = []
        on_stack = set()

        def dfs(node: str) -> Optional[List[str]]:
            """Depth-first search with recursion stack tracking."""
            visited.add(node)
            stack.append(node)
            on_stack.add(node)

            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    found = dfs(neighbor)
                    if found:
                        return found
                elif neighbor in on_stack:
                    # Back edge found = cycle
                    return stack[stack.index(neighbor):] + [neighbor]

            stack.pop()
            on_stack.remove(node)
            return None

        for start in list(graph):
            if start not in visited:
                found = dfs(start)
                if found:
                    return found
        return None
