"""Seeded demo datasets for exercising the orchestrator.

- contradictions: a fictional-world knowledge base with planted contradicting statement pairs
- pairs: OOLONG-Pairs style quadratic aggregation ("count pairs whose values differ by 10")
- multi_hop: short relational documents for multi-hop questions
- needle: a single fact hidden in a haystack of filler lines

All generators are deterministic for a given seed. `PRESETS` pairs datasets with the query
they are meant to be asked with.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple


# One pair (P2) differs by exactly 10.
COUNT_PAIRS_EXAMPLE = "P1: 1,2\nP2: 11,1"


def generate_pairs_dataset(
    count: int,
    *,
    target_diff: int = 10,
    match_ratio: float = 0.1,
    seed: int = 42,
) -> str:
    """Lines of `pair_id: value_a, value_b`; about `match_ratio` of them differ by `target_diff`."""

    rng = random.Random(seed)
    match_count = int(count * match_ratio)
    match_indices = set(rng.sample(range(count), match_count)) if count else set()
    width = len(str(count))

    lines = []
    for i in range(count):
        value_a = rng.randrange(1000)
        if i in match_indices:
            value_b = value_a + target_diff if rng.random() > 0.5 else value_a - target_diff
        else:
            value_b = rng.randrange(1000)
            while abs(value_a - value_b) == target_diff:
                value_b = rng.randrange(1000)
        lines.append(f"P{str(i + 1).zfill(width)}: {value_a}, {value_b}")

    rng.shuffle(lines)

    header = [
        "# OOLONG-Pairs Dataset",
        f"# Total pairs: {count}",
        f"# Target difference: {target_diff}",
        f"# Expected matches: {match_count} ({match_ratio * 100:.0f}%)",
        "# Format: pair_id: value_a, value_b",
        "#",
    ]
    return "\n".join(header + lines)


_ENTITIES = ["Alice", "Bob", "Carol", "David", "Eve", "Frank", "Grace", "Henry"]
_RELATIONS = ["works at", "lives in", "is friends with", "manages", "reports to"]
_PLACES = ["NYC", "LA", "Chicago", "Boston", "Seattle", "Miami", "Denver", "Austin"]
_COMPANIES = ["Acme Corp", "TechStart", "GlobalFin", "MegaRetail", "DataDriven", "CloudNine"]


def generate_multi_hop_docs(count: int, *, seed: int = 123) -> str:
    rng = random.Random(seed)
    docs = []
    for i in range(count):
        entity = rng.choice(_ENTITIES)
        relation = rng.choice(_RELATIONS)
        if relation == "lives in":
            target = rng.choice(_PLACES)
        elif relation == "works at":
            target = rng.choice(_COMPANIES)
        else:
            target = rng.choice(_ENTITIES)
        docs.append(f"DOC_{i + 1}: {entity} {relation} {target}.")
    return "\n".join(docs)


_FILLER = [
    "the", "quick", "brown", "fox", "jumps", "over", "lazy", "dog",
    "lorem", "ipsum", "dolor", "sit", "amet", "consectetur", "adipiscing", "elit",
]

_NEEDLE_POSITIONS = {"start": 0.1, "middle": 0.5, "end": 0.9}


def generate_needle_haystack(
    size: int,
    *,
    needle: str = "SECRET_CODE_12345",
    position: str = "middle",
    seed: int = 456,
) -> str:
    rng = random.Random(seed)
    lines = [" ".join(rng.choice(_FILLER) for _ in range(rng.randint(5, 14))) for _ in range(size)]

    if position == "random":
        idx = rng.randrange(size) if size else 0
    elif position in _NEEDLE_POSITIONS:
        idx = int(size * _NEEDLE_POSITIONS[position])
    else:
        raise ValueError(f"Unknown needle position: {position!r}")

    lines.insert(idx, f"IMPORTANT: The answer is {needle}")
    return "\n".join(lines)


_KINGDOMS = ["Aldoria", "Vethmar", "Kestros", "Lumina", "Draketh", "Sylvanor", "Ironhold", "Mistral"]
_RULERS = ["Marcus", "Helena", "Theron", "Lyra", "Cassius", "Aria", "Darius", "Seraphina"]
_CITIES = [
    "Thornwood", "Crystalfall", "Irongate", "Shadowmere",
    "Goldenhaven", "Stormwind", "Ravenshollow", "Sunspire",
]
_RESOURCES = ["gold", "iron", "timber", "grain", "silver", "gems", "coal", "silk"]
_HISTORY = ["founded", "conquered", "abandoned", "rebuilt", "flourished", "declined"]
_KINGDOM_RELATIONS = ["allied with", "at war with", "trading partner of", "vassal of", "rival of"]


@dataclass(frozen=True)
class Contradiction:
    stmt1: str
    stmt2: str
    reason: str


@dataclass(frozen=True)
class ContradictionDataset:
    # Header lines plus `STMT_ID: text` lines, shuffled.
    statements: str
    contradictions: List[Contradiction] = field(default_factory=list)
    total_statements: int = 0

    @property
    def total_contradictions(self) -> int:
        return len(self.contradictions)


def _world_facts(rng: random.Random) -> List[str]:
    facts = []
    for i, kingdom in enumerate(_KINGDOMS):
        facts += [
            f"The ruler of {kingdom} is {_RULERS[i % len(_RULERS)]}.",
            f"The capital of {kingdom} is {_CITIES[i % len(_CITIES)]}.",
            f"{kingdom} was founded in the year {1000 + i * 50}.",
            f"{kingdom} is known for its {_RESOURCES[i % len(_RESOURCES)]} production.",
        ]
    for a, b in zip(_KINGDOMS, _KINGDOMS[1:]):
        facts.append(f"{a} is {rng.choice(_KINGDOM_RELATIONS)} {b}.")
    return facts


def _filler_statement(rng: random.Random) -> str:
    kingdom = rng.choice(_KINGDOMS)
    city = rng.choice(_CITIES)
    ruler = rng.choice(_RULERS)
    resource = rng.choice(_RESOURCES)
    year = 1000 + rng.randrange(500)
    return rng.choice(
        [
            f"{city} in {kingdom} was {rng.choice(_HISTORY)} in {year}.",
            f"{ruler} visited {city} during the {year} festival.",
            f"The {resource} mines of {kingdom} produced 1000 tons in {year}.",
            f"A great storm hit {kingdom} in the year {year}.",
            f"{ruler} signed a treaty in {city} in {year}.",
            f"The population of {city} reached 50000 by {year}.",
            f"{kingdom} exported {resource} to neighboring realms in {year}.",
            f"The university of {city} was established in {year}.",
        ]
    )


def _planted_pair(kind: int, rng: random.Random) -> Tuple[str, str, str]:
    """Two statements that cannot both be true, and why."""

    if kind == 0:
        kingdom = rng.choice(_KINGDOMS)
        return (
            f"{rng.choice(_RULERS)} has been the ruler of {kingdom} since birth.",
            f"{kingdom} has never had a hereditary ruler; all leaders are elected.",
            f"{kingdom} cannot have both a birth-ruler and only elected leaders",
        )
    if kind == 1:
        kingdom = rng.choice(_KINGDOMS)
        early = 1000 + rng.randrange(200)
        late = early + 500
        return (
            f"{kingdom} was established in {early}, making it the oldest kingdom.",
            f"{kingdom} did not exist until {late}, founded after the Great War.",
            f"{kingdom} cannot be founded in both {early} and {late}",
        )
    if kind == 2:
        city = rng.choice(_CITIES)
        first, second = rng.sample(_KINGDOMS, 2)
        return (
            f"{city} is located in the heart of {first}.",
            f"{city} has always been part of {second}, never {first}.",
            f"{city} cannot be in both {first} and {second}",
        )
    if kind == 3:
        entity = rng.choice(_CITIES + _KINGDOMS)
        year = 1200 + rng.randrange(300)
        return (
            f"{entity} was completely destroyed in {year} and never rebuilt.",
            f"{entity} has existed continuously for over 1000 years without interruption.",
            f"{entity} cannot be both destroyed and continuously existing",
        )
    first, second = rng.sample(_KINGDOMS, 2)
    return (
        f"{first} and {second} have been at war for 200 years without ceasefire.",
        f"{first} and {second} have maintained peaceful relations throughout history.",
        f"{first} and {second} cannot be both at perpetual war and always peaceful",
    )


def generate_contradiction_dataset(
    count: int = 500,
    ratio: float = 0.1,
    *,
    seed: int = 42,
) -> ContradictionDataset:
    """Knowledge base of about `count` statements; `count * ratio` contradicting pairs are planted.

    The fixed world facts (rulers, capitals, founding years, relations) are always present,
    so very small counts yield slightly more statements than requested.
    """

    rng = random.Random(seed)
    target = int(count * ratio)

    texts = _world_facts(rng)
    while len(texts) < count - target * 2:
        texts.append(_filler_statement(rng))

    statements = [(f"STMT_{i:05d}", text) for i, text in enumerate(texts, start=1)]
    contradictions: List[Contradiction] = []
    for c in range(target):
        first, second, reason = _planted_pair(c % 5, rng)
        id1 = f"STMT_{len(statements) + 1:05d}"
        id2 = f"STMT_{len(statements) + 2:05d}"
        statements += [(id1, first), (id2, second)]
        contradictions.append(Contradiction(stmt1=id1, stmt2=id2, reason=reason))

    rng.shuffle(statements)

    header = [
        "# Fictional World Knowledge Base",
        f"# Total statements: {len(statements)}",
        "# Task: Find all pairs of statements that contradict each other",
        "#",
        "# Format: STMT_ID: statement text",
        "#",
    ]
    body = [f"{stmt_id}: {text}" for stmt_id, text in statements]
    return ContradictionDataset(
        statements="\n".join(header + body),
        contradictions=contradictions,
        total_statements=len(statements),
    )


def _contradiction_statements(count: int) -> str:
    return generate_contradiction_dataset(count).statements


DATASETS: Dict[str, Callable[[int], str]] = {
    "contradictions": _contradiction_statements,
    "pairs": generate_pairs_dataset,
    "multi-hop": generate_multi_hop_docs,
    "needle": generate_needle_haystack,
}


def generate(name: str, count: int) -> str:
    if name not in DATASETS:
        raise ValueError(f"Unknown dataset {name!r}; choose from {sorted(DATASETS)}")
    return DATASETS[name](count)


# ------------------------- Presets (dataset + query) -------------------------


@dataclass(frozen=True)
class DemoPreset:
    name: str
    description: str
    query: str
    dataset: str  # key into DATASETS
    count: int
    expected: str = ""

    def context(self, count: Optional[int] = None) -> str:
        return generate(self.dataset, self.count if count is None else count)


PRESETS: Dict[str, DemoPreset] = {
    p.name: p
    for p in (
        DemoPreset(
            name="contradictions",
            description="500 statements, ~125K pair comparisons",
            query="Find all contradicting statement pairs. Use llm_query_batch() for maximum parallelism.",
            dataset="contradictions",
            count=500,
            expected="~50 contradictions",
        ),
        DemoPreset(
            name="pairs",
            description="Count pairs with diff=10",
            query="Count how many pairs have values that differ by exactly 10.",
            dataset="pairs",
            count=1000,
            expected="100",
        ),
        DemoPreset(
            name="pairs-10k",
            description="Larger scale counting",
            query="Count pairs where abs(value_a - value_b) == 10. Use batch processing.",
            dataset="pairs",
            count=10000,
            expected="1000",
        ),
        DemoPreset(
            name="pairs-prime",
            description="Count pairs where diff=10 AND both values are prime",
            query="Find pairs where abs(value_a - value_b) == 10 AND both are prime. Use llm_query_batch().",
            dataset="pairs",
            count=500,
        ),
        DemoPreset(
            name="multi-hop",
            description="Relational documents, multi-hop lookups",
            query="Which companies employ people who live in the same city as one of Alice's friends?",
            dataset="multi-hop",
            count=200,
        ),
        DemoPreset(
            name="needle",
            description="One fact hidden in filler lines",
            query="Find the secret code mentioned in the text.",
            dataset="needle",
            count=10000,
            expected="SECRET_CODE_12345",
        ),
    )
}


def get_preset(name: str) -> DemoPreset:
    if name not in PRESETS:
        raise ValueError(f"Unknown demo {name!r}; choose from {sorted(PRESETS)}")
    return PRESETS[name]
