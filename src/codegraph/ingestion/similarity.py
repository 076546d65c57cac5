"""
Similarity detection.

Finds exact duplicates (same normalized-code hash), near duplicates and
similar patterns (n-gram Jaccard overlap), and structural patterns across
functions (matching feature flags within a parameter-count/async signature).
"""

import logging
import re
from typing import Any, Dict, List, Sequence, Set

from codegraph.models import CodeBlock, FunctionEntity, Pattern, SimilarityEdge

logger = logging.getLogger(__name__)

NGRAM_SIZE = 3
MIN_BLOCK_LINES = 5
MIN_SIZE_RATIO = 0.5
NEAR_DUPLICATE_THRESHOLD = 0.95
SIMILAR_PATTERN_THRESHOLD = 0.7
STRUCTURAL_THRESHOLD = 0.7

BOOLEAN_FEATURES = (
    "has_await",
    "has_try_catch",
    "has_conditional",
    "has_loop",
    "returns_value",
    "throws",
    "uses_request",
    "uses_response",
    "uses_fetch",
    "registers_listener",
)

_ARROW_BLOCK = re.compile(r"=>\s*{")
_PY_CONDITIONAL = re.compile(r"^\s*(el)?if\s", re.MULTILINE)


# =========================================================================
# PAIRWISE SIMILARITY
# =========================================================================


def ngrams(text: str, n: int = NGRAM_SIZE) -> Set[str]:
    """Set of contiguous ``n``-token windows, tokenizing on whitespace."""
    tokens = text.split()
    return {" ".join(tokens[i:i + n]) for i in range(len(tokens) - n + 1)}


def jaccard_similarity(code1: str, code2: str) -> float:
    """Jaccard overlap of the 3-gram sets; 0.0 when either set is empty."""
    ngrams1 = ngrams(code1)
    ngrams2 = ngrams(code2)
    if not ngrams1 or not ngrams2:
        return 0.0
    return len(ngrams1 & ngrams2) / len(ngrams1 | ngrams2)


def _edge(block1: CodeBlock, block2: CodeBlock, similarity: float, edge_type: str) -> SimilarityEdge:
    return SimilarityEdge(
        source_id=block1.function_id,
        target_id=block2.function_id,
        similarity=similarity,
        type=edge_type,
        source_file=block1.file,
        target_file=block2.file,
    )


def detect_similarities(code_blocks: Sequence[CodeBlock]) -> List[SimilarityEdge]:
    """
    Detect similar code blocks.

    Args:
        code_blocks: Blocks with normalized code, in a stable order

    Returns:
        One edge per exact-duplicate pair, then one per fuzzy pair scoring >= 0.7
    """
    similarities = []

    # Phase 1: exact duplicates (same hash)
    hash_groups: Dict[str, List[CodeBlock]] = {}
    for block in code_blocks:
        hash_groups.setdefault(block.hash, []).append(block)

    for group in hash_groups.values():
        for i in range(len(group)):
            for j in range(i + 1, len(group)):
                similarities.append(_edge(group[i], group[j], 1.0, "exact-duplicate"))

    # Phase 2: fuzzy similarity over one representative per hash group
    unique_blocks = [group[0] for group in hash_groups.values()]
    for i in range(len(unique_blocks)):
        for j in range(i + 1, len(unique_blocks)):
            block1 = unique_blocks[i]
            block2 = unique_blocks[j]

            if block1.line_count < MIN_BLOCK_LINES or block2.line_count < MIN_BLOCK_LINES:
                continue

            size_ratio = min(block1.line_count, block2.line_count) / max(block1.line_count, block2.line_count)
            if size_ratio < MIN_SIZE_RATIO:
                continue

            similarity = jaccard_similarity(block1.normalized_code, block2.normalized_code)
            if similarity >= NEAR_DUPLICATE_THRESHOLD:
                similarities.append(_edge(block1, block2, similarity, "near-duplicate"))
            elif similarity >= SIMILAR_PATTERN_THRESHOLD:
                similarities.append(_edge(block1, block2, similarity, "similar-pattern"))

    return similarities


# =========================================================================
# STRUCTURAL PATTERNS
# =========================================================================


def extract_structural_features(code: str) -> Dict[str, Any]:
    """Feature flags used for structural comparison (empty dict for empty code)."""
    if not code:
        return {}

    return {
        "has_await": "await" in code,
        "has_try_catch": "try" in code and ("catch" in code or "except" in code),
        "has_conditional": "if (" in code or "if(" in code or bool(_PY_CONDITIONAL.search(code)),
        "has_loop": "for " in code or "while " in code or ".forEach" in code or ".map" in code,
        "returns_value": "return " in code,
        "throws": "throw " in code or "raise " in code,
        "uses_request": "req." in code or "req," in code,
        "uses_response": "res." in code or "res," in code,
        "uses_fetch": "fetch(" in code,
        "registers_listener": "addEventListener" in code or ".on(" in code,
        "arrow_count": len(_ARROW_BLOCK.findall(code)),
        "line_count": code.count("\n") + 1,
    }


def structural_similarity(features1: Dict[str, Any], features2: Dict[str, Any]) -> float:
    """Fraction of boolean features that agree."""
    if not features1 or not features2:
        return 0.0
    matches = sum(1 for key in BOOLEAN_FEATURES if features1[key] == features2[key])
    return matches / len(BOOLEAN_FEATURES)


def _group_by_structure(functions: List[FunctionEntity]) -> List[List[FunctionEntity]]:
    """Greedy seeded clustering; order-dependent, so input order must be stable."""
    features = {func.id: extract_structural_features(func.code) for func in functions}
    groups = []
    assigned: Set[str] = set()

    for func in functions:
        if func.id in assigned:
            continue
        group = [func]
        assigned.add(func.id)

        for other in functions:
            if other.id in assigned:
                continue
            if structural_similarity(features[func.id], features[other.id]) >= STRUCTURAL_THRESHOLD:
                group.append(other)
                assigned.add(other.id)

        groups.append(group)

    return groups


def describe_pattern(group: Sequence[FunctionEntity]) -> str:
    if not group:
        return "Empty pattern"

    features = extract_structural_features(group[0].code)
    parts = []
    if features.get("has_await"):
        parts.append("async")
    if features.get("has_try_catch"):
        parts.append("with error handling")
    if features.get("uses_response") and features.get("uses_request"):
        parts.append("HTTP handler")
    if features.get("uses_fetch"):
        parts.append("API client")
    if features.get("registers_listener"):
        parts.append("event handler")

    return f"{', '.join(parts)} pattern" if parts else "Generic function pattern"


def detect_patterns(functions: Sequence[FunctionEntity]) -> List[Pattern]:
    """
    Detect structural patterns across functions.

    Functions are grouped by ``(parameter count, is_async)`` in first-appearance
    order, then clustered by structural similarity. Clusters of two or more
    functions are reported.
    """
    patterns = []

    signature_groups: Dict[str, List[FunctionEntity]] = {}
    for func in functions:
        signature = f"{len(func.parameters)}:{str(func.is_async).lower()}"
        signature_groups.setdefault(signature, []).append(func)

    for signature, funcs in signature_groups.items():
        if len(funcs) < 2:
            continue
        for index, group in enumerate(_group_by_structure(funcs)):
            if len(group) < 2:
                continue
            patterns.append(
                Pattern(
                    id=f"pattern:{signature}:{index}",
                    signature=signature,
                    function_ids=tuple(f.id for f in group),
                    count=len(group),
                    description=describe_pattern(group),
                )
            )

    return patterns


# =========================================================================
# REFACTORING OPPORTUNITIES
# =========================================================================


def find_refactoring_opportunities(
    similarities: Sequence[SimilarityEdge], patterns: Sequence[Pattern]
) -> List[Dict[str, Any]]:
    """Advisory suggestions derived from duplicates and repeated patterns."""
    opportunities = []

    exact_duplicates = [s for s in similarities if s.type == "exact-duplicate"]
    if exact_duplicates:
        files = sorted({s.source_file for s in exact_duplicates} | {s.target_file for s in exact_duplicates})
        opportunities.append(
            {
                "type": "extract-shared-function",
                "priority": "high",
                "description": (
                    f"Found {len(exact_duplicates)} exact duplicate code blocks across {len(files)} files"
                ),
                "files": files,
                "blocks": [[s.source_id, s.target_id] for s in exact_duplicates],
                "suggestion": "Extract these into a shared utility function",
            }
        )

    near_duplicates = [s for s in similarities if s.type == "near-duplicate"]
    if near_duplicates:
        opportunities.append(
            {
                "type": "parameterize-function",
                "priority": "medium",
                "description": f"Found {len(near_duplicates)} near-duplicate code blocks",
                "blocks": [
                    {"functions": [s.source_id, s.target_id], "similarity": s.similarity}
                    for s in near_duplicates
                ],
                "suggestion": "Consider parameterizing these similar functions",
            }
        )

    large_patterns = [p for p in patterns if p.count >= 3]
    if large_patterns:
        opportunities.append(
            {
                "type": "create-abstraction",
                "priority": "low",
                "description": f"Found {len(large_patterns)} repeated structural patterns",
                "patterns": [
                    {"description": p.description, "count": p.count, "functions": list(p.function_ids)}
                    for p in large_patterns
                ],
                "suggestion": "Consider creating a higher-order function or class to handle this pattern",
            }
        )

    return opportunities
