"""Knowledge retrieval collaborator.

``KnowledgeBackend`` is the contract the reasoning engine consumes. The
in-memory implementation scores articles lexically so retrieval stays
deterministic without an embedding service; an embedding-backed backend can
replace it behind the same ``search`` call.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from pydantic import BaseModel, Field

from trip_assistant.models import KnowledgeArticle, ScoredArticle

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"[a-z0-9]+")

# Weight of a query token found in each article field.
FIELD_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    ("title", 1.0),
    ("place", 1.0),
    ("tags", 0.9),
    ("summary", 0.75),
    ("content", 0.65),
)


class KnowledgeQuery(BaseModel):
    query_text: str
    categories: Tuple[str, ...] = ()
    limit: int = Field(5, gt=0)
    threshold: float = Field(0.7, ge=0.0, le=1.0)


class KnowledgeBackend(Protocol):
    async def search(self, query: KnowledgeQuery) -> List[ScoredArticle]:
        ...


def _normalize(token: str) -> str:
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: Optional[str]) -> Set[str]:
    return {_normalize(t) for t in _TOKEN.findall((text or "").lower())}


class InMemoryKnowledgeBase:
    def __init__(self, articles: Iterable[KnowledgeArticle] = ()):
        self._articles: List[KnowledgeArticle] = []
        self._fields: Dict[str, Dict[str, Set[str]]] = {}
        for article in articles:
            self.add(article)

    def add(self, article: KnowledgeArticle) -> None:
        self._articles.append(article)
        self._fields[article.id] = {
            "title": tokenize(article.title),
            "place": tokenize(" ".join(filter(None, (article.city, article.country)))),
            "tags": tokenize(" ".join(article.tags)),
            "summary": tokenize(article.summary),
            "content": tokenize(article.content),
        }

    def __len__(self) -> int:
        return len(self._articles)

    def similarity(self, article: KnowledgeArticle, query_tokens: Set[str]) -> float:
        if not query_tokens:
            return 0.0
        fields = self._fields[article.id]
        total = 0.0
        for token in query_tokens:
            total += max((weight for name, weight in FIELD_WEIGHTS if token in fields[name]), default=0.0)
        return round(total / len(query_tokens), 4)

    async def search(self, query: KnowledgeQuery) -> List[ScoredArticle]:
        tokens = tokenize(query.query_text)
        categories = set(query.categories)
        scored = []
        for article in self._articles:
            if categories and article.category not in categories:
                continue
            score = self.similarity(article, tokens)
            if score >= query.threshold:
                scored.append(ScoredArticle(article=article, similarity=score))
        scored.sort(key=lambda s: s.similarity, reverse=True)
        logger.debug("Knowledge search %r matched %d article(s)", query.query_text, len(scored))
        return scored[: query.limit]


DEFAULT_ARTICLES: Sequence[KnowledgeArticle] = (
    KnowledgeArticle(
        id="paris-overview",
        title="Paris city guide",
        category="destinations",
        country="France",
        city="Paris",
        tags=("museums", "food", "romance", "art"),
        summary="Museums, cafes and walkable neighbourhoods along the Seine.",
        content="Most visitors spend four to six days. Buy a museum pass for the Louvre and Orsay and use the metro.",
    ),
    KnowledgeArticle(
        id="rome-overview",
        title="Rome city guide",
        category="destinations",
        country="Italy",
        city="Rome",
        tags=("history", "food", "architecture"),
        summary="Ancient ruins, piazzas and trattorias in the Eternal City.",
        content="Book the Colosseum and Vatican Museums ahead. Three to five days covers the highlights on foot.",
    ),
    KnowledgeArticle(
        id="tokyo-overview",
        title="Tokyo city guide",
        category="destinations",
        country="Japan",
        city="Tokyo",
        tags=("food", "technology", "shopping", "temples"),
        summary="Distinct neighbourhoods connected by one of the world's best rail networks.",
        content="A prepaid transit card covers trains and buses. Plan districts by day to limit travel time.",
    ),
    KnowledgeArticle(
        id="europe-rail",
        title="Rail passes across Europe",
        category="transportation",
        tags=("train", "rail", "europe", "budget"),
        summary="When a rail pass beats point-to-point tickets.",
        content="Passes pay off for long multi-country trips; short city hops are cheaper with advance tickets.",
    ),
    KnowledgeArticle(
        id="hostels-hotels",
        title="Hostels, hotels and apartments",
        category="accommodation",
        tags=("hostel", "hotel", "apartment", "budget"),
        summary="Choosing where to stay by budget, group size and trip length.",
        content="Apartments suit families and longer stays; hostels keep solo budget travel affordable.",
    ),
    KnowledgeArticle(
        id="budget-daily",
        title="Daily budget planning",
        category="budget",
        tags=("budget", "cost", "money", "saving"),
        summary="Estimating a per-day budget for lodging, food, transport and activities.",
        content="Split the budget roughly into lodging 40%, food 25%, transport 15% and activities 20%.",
    ),
    KnowledgeArticle(
        id="japan-etiquette",
        title="Japanese etiquette basics",
        category="culture",
        country="Japan",
        tags=("customs", "etiquette", "tradition", "local"),
        summary="Bowing, shoes indoors and quiet trains.",
        content="Tipping is not expected. Keep phone calls off public transport and carry your rubbish with you.",
    ),
    KnowledgeArticle(
        id="solo-safety",
        title="Staying safe while travelling solo",
        category="safety",
        tags=("safety", "solo", "emergency", "scam"),
        summary="Practical habits that lower risk on the road.",
        content="Share your itinerary, keep digital copies of documents and learn the local emergency number.",
    ),
    KnowledgeArticle(
        id="bangkok-food",
        title="Street food in Bangkok",
        category="food",
        country="Thailand",
        city="Bangkok",
        tags=("food", "street", "market", "cheap"),
        summary="Night markets and hawker stalls worth the queue.",
        content="Look for busy stalls with high turnover and carry small notes for payment.",
    ),
    KnowledgeArticle(
        id="patagonia-hiking",
        title="Hiking in Patagonia",
        category="activities",
        country="Chile",
        tags=("hiking", "adventure", "outdoor", "mountain"),
        summary="Multi-day treks through Torres del Paine.",
        content="Reserve refugios months ahead and pack for four seasons in one day.",
    ),
)
