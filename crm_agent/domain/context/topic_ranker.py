from typing import Dict, List, Iterable
import re


TOPIC_KEYWORDS: Dict[str, List[str]] = {
    "customers": ["customer", "customers", "client", "clients", "contact", "contacts"],
    "orders": ["order", "orders", "line", "items", "shipment"],
    "quotes": ["quote", "quotes", "quotation", "pricing", "price", "configure"],
    "invoices": ["invoice", "invoices", "overdue", "payment", "payments", "unpaid"],
    "analytics": ["report", "reports", "revenue", "metrics", "trend", "trends", "analytics", "kpi"],
}


class TopicRanker:
    """Ranks conversation topics by keyword overlap with recent messages"""

    def __init__(self, vocabulary: Dict[str, List[str]] = None):
        self.vocabulary = vocabulary or TOPIC_KEYWORDS

    def rank_topics(self, texts: Iterable[str]) -> Dict[str, int]:
        """Count keyword hits per topic"""

        words: List[str] = []
        for text in texts:
            words.extend(re.findall(r'\w+', (text or "").lower()))

        scores = {}
        for topic, keywords in self.vocabulary.items():
            keyword_set = set(keywords)
            hits = sum(1 for word in words if word in keyword_set)
            if hits:
                scores[topic] = hits
        return scores

    def summarize(self, texts: Iterable[str], limit: int = 3) -> str:
        """Comma-separated top topics, empty when nothing matches"""

        scores = self.rank_topics(texts)
        if not scores:
            return ""

        # Ties keep vocabulary order
        order = list(self.vocabulary.keys())
        ranked = sorted(scores.items(), key=lambda item: (-item[1], order.index(item[0])))
        return ", ".join(topic for topic, _ in ranked[:limit])
