"""The fixed embryo developmental-stage label set.

Every probability distribution and every confusion-matrix axis produced by
EmbryoLens is indexed against ``LABELS`` in this exact order.
"""

from __future__ import annotations

from enum import StrEnum


class EmbryoLabel(StrEnum):
    GRADE_1_1_2 = "1-1-2"
    GRADE_2_2_2 = "2-2-2"
    GRADE_3_2_2 = "3-2-2"
    GRADE_2_1_3 = "2-1-3"
    ARRESTED = "arrested"
    MORULA = "morula"
    EARLY = "early"


LABELS: tuple[EmbryoLabel, ...] = tuple(EmbryoLabel)
NUM_LABELS: int = len(LABELS)
