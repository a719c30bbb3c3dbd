# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet


import re
from typing import Dict, List

from coreason_free_fleet.models import ModelCategory, TaskType
from coreason_free_fleet.utils.logger import logger

# Checked in insertion order; the first task type with a matching pattern wins.
TASK_PATTERNS: Dict[TaskType, List[str]] = {
    TaskType.CODE_GENERATION: [
        r"write\s+(a\s+)?(function|class|code|script|component|module|api)",
        r"implement\s+",
        r"create\s+(a\s+)?(function|class|component|module|api|script)",
        r"generate\s+(code|function|class)",
        r"build\s+(a|an)\s+(app|component|feature)",
    ],
    TaskType.CODE_REVIEW: [
        r"review\s+(this|the)\s+code",
        r"what('s|\s+is)\s+wrong\s+with",
        r"improve\s+(the\s+)?(code|performance)",
        r"check\s+(this|the)\s+code",
        r"analyze\s+(this|the)\s+(code|implementation)",
    ],
    TaskType.DEBUGGING: [
        r"debug",
        r"fix\s+(this|the)\s+(error|bug|issue|problem)",
        r"why\s+(is|does)\s+(this|it|.*function)\s+(not\s+work|fail|break|return\s+null)",
        r"error\s+(in|with)",
        r"not\s+working",
    ],
    TaskType.REASONING: [
        r"explain\s+why",
        r"reason\s+through",
        r"step\s+by\s+step",
        r"think\s+about",
        r"analyze\s+the\s+(problem|situation)",
        r"what\s+would\s+happen\s+if",
    ],
    TaskType.MATH: [
        r"calculate",
        r"solve\s+(the|this)\s+(equation|problem)",
        r"what\s+is\s+\d+",
        r"compute",
        r"math(ematical)?",
    ],
    TaskType.WRITING: [
        r"write\s+(a|an)\s+(article|essay|post|blog|story|email)",
        r"draft\s+(a|an)",
        r"compose",
        r"rewrite",
        r"paraphrase",
    ],
    TaskType.SUMMARIZATION: [
        r"summarize",
        r"tldr",
        r"give\s+(me\s+)?a\s+summary",
        r"brief(ly)?\s+(explain|describe)",
        r"in\s+a\s+nutshell",
    ],
    TaskType.TRANSLATION: [
        r"translate",
        r"in\s+(spanish|french|german|chinese|japanese)",
        r"convert\s+to\s+(spanish|french|german)",
    ],
    TaskType.MULTIMODAL: [r"image", r"picture", r"photo", r"visual", r"diagram", r"chart"],
}

TASK_CATEGORY: Dict[TaskType, ModelCategory] = {
    TaskType.CODE_GENERATION: ModelCategory.CODING,
    TaskType.CODE_REVIEW: ModelCategory.CODING,
    TaskType.DEBUGGING: ModelCategory.CODING,
    TaskType.REASONING: ModelCategory.REASONING,
    TaskType.MATH: ModelCategory.REASONING,
    TaskType.WRITING: ModelCategory.WRITING,
    TaskType.SUMMARIZATION: ModelCategory.SPEED,
    TaskType.TRANSLATION: ModelCategory.WRITING,
    TaskType.MULTIMODAL: ModelCategory.MULTIMODAL,
    TaskType.GENERAL: ModelCategory.WRITING,
}


def _compile_task_patterns() -> Dict[TaskType, List["re.Pattern[str]"]]:
    return {
        task_type: [re.compile(pattern, re.IGNORECASE) for pattern in patterns]
        for task_type, patterns in TASK_PATTERNS.items()
    }


COMPILED_TASK_PATTERNS = _compile_task_patterns()


class TaskTypeDetector:
    """
    Classifies a prompt into a TaskType with a lightweight keyword heuristic,
    so classification adds no noticeable latency before a race.
    """

    def detect(self, prompt: str) -> TaskType:
        for task_type, patterns in COMPILED_TASK_PATTERNS.items():
            if any(pattern.search(prompt) for pattern in patterns):
                logger.debug(f"TaskTypeDetector: length={len(prompt)} -> {task_type.value}")
                return task_type
        logger.debug(f"TaskTypeDetector: length={len(prompt)} -> {TaskType.GENERAL.value}")
        return TaskType.GENERAL

    def task_type_to_category(self, task_type: TaskType) -> ModelCategory:
        return TASK_CATEGORY[task_type]
