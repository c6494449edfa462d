"""クレーム回答の照合

物品登録者が設定した確認質問と、申請者の回答を比較してクレームの
一致度（強い一致 / 部分一致 / 弱い一致）を判定する。副作用のない純粋関数のみ。
"""
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from campus_lost_found.errors import ValidationError
from campus_lost_found.models import MatchLevel

# 類似度がこの値を超えたら正解とみなす
SIMILARITY_THRESHOLD = 0.8
# この文字数以下の回答は完全一致のみ正解
MIN_FUZZY_LENGTH = 3
STRONG_MATCH_RATIO = 0.8
PARTIAL_MATCH_RATIO = 0.6
MIN_REQUIRED_CORRECT = 2


@dataclass(frozen=True)
class AnswerComparison:
    question: str
    correct_answer: str
    user_answer: str
    is_correct: bool
    similarity: float

    def to_dict(self) -> Dict:
        return {
            "question": self.question,
            "correct_answer": self.correct_answer,
            "user_answer": self.user_answer,
            "is_correct": self.is_correct,
            "similarity": self.similarity,
        }


@dataclass(frozen=True)
class Evaluation:
    match_level: MatchLevel
    correct_count: int
    total: int
    required: int
    comparisons: List[AnswerComparison] = field(default_factory=list)

    @property
    def accuracy_percentage(self) -> int:
        if not self.total:
            return 0
        return round(self.correct_count / self.total * 100)


def normalize_answer(text: str) -> str:
    return (text or "").strip().lower()


def levenshtein_distance(a: str, b: str) -> int:
    """挿入・削除・置換のコストを1とした編集距離"""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(min(
                    previous[j - 1] + 1,  # 置換
                    current[j - 1] + 1,   # 挿入
                    previous[j] + 1,      # 削除
                ))
        previous = current
    return previous[-1]


def calculate_similarity(a: str, b: str) -> float:
    """編集距離を長い方の文字列長で正規化した類似度（0〜1）"""
    if a == b:
        return 1.0
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein_distance(a, b)) / max_len


def compare_answer(question: str, correct_answer: str, user_answer: str) -> AnswerComparison:
    expected = normalize_answer(correct_answer)
    given = normalize_answer(user_answer)
    similarity = calculate_similarity(expected, given)

    if expected == given:
        is_correct = True
    elif len(expected) > MIN_FUZZY_LENGTH and len(given) > MIN_FUZZY_LENGTH:
        is_correct = similarity > SIMILARITY_THRESHOLD
    else:
        is_correct = False

    return AnswerComparison(
        question=question,
        correct_answer=correct_answer,
        user_answer=user_answer,
        is_correct=is_correct,
        similarity=round(similarity, 4),
    )


def required_correct(total: int) -> int:
    return max(MIN_REQUIRED_CORRECT, math.ceil(total * STRONG_MATCH_RATIO))


def decide_match_level(correct_count: int, total: int) -> MatchLevel:
    if correct_count >= required_correct(total):
        return MatchLevel.STRONG
    if correct_count >= math.ceil(total * PARTIAL_MATCH_RATIO):
        return MatchLevel.PARTIAL
    return MatchLevel.WEAK


def evaluate_answers(questions: Sequence[Dict], answers: Sequence[str]) -> Evaluation:
    """
    確認質問に対する回答を評価する

    Args:
        questions: 物品に保存された [{"question": ..., "answer": ...}]
        answers: 申請者の回答（質問と同じ順序・同じ件数）

    Returns:
        一致度と質問ごとの照合結果
    """
    if not questions:
        raise ValidationError("This item does not have verification questions set up")
    if len(answers) != len(questions):
        raise ValidationError("answer count mismatch: please answer all verification questions")

    comparisons = [
        compare_answer(q.get("question", ""), q.get("answer", ""), answer)
        for q, answer in zip(questions, answers)
    ]
    correct_count = sum(1 for c in comparisons if c.is_correct)
    total = len(questions)

    return Evaluation(
        match_level=decide_match_level(correct_count, total),
        correct_count=correct_count,
        total=total,
        required=required_correct(total),
        comparisons=comparisons,
    )
