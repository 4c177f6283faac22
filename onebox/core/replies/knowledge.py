"""
Knowledge base for reply suggestions.

Small in-memory corpus (product description, outreach agenda, reply
guidance) ranked against an email with TF-IDF cosine similarity.
"""
import logging
import math
import re
import uuid
from collections import Counter
from typing import Dict, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"[a-z0-9']+")

# Words too common to say anything about relevance
STOP_WORDS = frozenset("""
a an and are as at be but by for from has have i if in is it its me my of on or our so
that the their them they this to was we were will with you your
""".split())


class KnowledgeEntry(BaseModel):
    id: str
    text: str
    metadata: Dict[str, str] = Field(default_factory=dict)


def tokenize(text: str) -> List[str]:
    return [t for t in TOKEN_RE.findall((text or "").lower()) if t not in STOP_WORDS]


class KnowledgeBase:
    """TF-IDF indexed knowledge entries"""

    def __init__(self,
                 product_name: str = "Email Assistant",
                 outreach_agenda: str = "",
                 meeting_link: str = "https://cal.com/example",
                 seed: bool = True):
        self.product_name = product_name
        self.outreach_agenda = outreach_agenda
        self.meeting_link = meeting_link

        self._entries: List[KnowledgeEntry] = []
        self._vocabulary: Dict[str, int] = {}
        self._idf: Optional[np.ndarray] = None
        self._matrix: Optional[np.ndarray] = None

        if seed:
            for entry in self._seed_entries():
                self._entries.append(entry)

    def _seed_entries(self) -> List[KnowledgeEntry]:
        entries = [
            KnowledgeEntry(
                id="product-info",
                text=f"Product: {self.product_name}. This is an email management and automation tool.",
                metadata={"type": "product"},
            ),
            KnowledgeEntry(
                id="template-interested",
                text="When someone shows interest, thank them warmly and provide the meeting booking link. "
                     "Express enthusiasm about discussing further.",
                metadata={"type": "template", "category": "interested"},
            ),
            KnowledgeEntry(
                id="template-meeting",
                text="For meeting requests, share your calendar link and suggest available time slots. "
                     "Be flexible and accommodating.",
                metadata={"type": "template", "category": "meeting"},
            ),
            KnowledgeEntry(
                id="template-followup",
                text="For follow-ups, be polite and reference the previous conversation. "
                     "Ask if they need any additional information.",
                metadata={"type": "template", "category": "followup"},
            ),
            KnowledgeEntry(
                id="template-interview",
                text="For interview-related emails, express enthusiasm about the opportunity. "
                     "Share your availability and confirm your interest in the position.",
                metadata={"type": "template", "category": "interview"},
            ),
            KnowledgeEntry(
                id="meeting-link",
                text=f"Include meeting booking link: {self.meeting_link} when someone is interested "
                     f"in scheduling a call or meeting.",
                metadata={"type": "agenda"},
            ),
        ]
        if self.outreach_agenda.strip():
            entries.insert(1, KnowledgeEntry(
                id="outreach-agenda", text=self.outreach_agenda.strip(), metadata={"type": "agenda"}
            ))
        return entries

    def add(self, text: str, metadata: Optional[Dict[str, str]] = None) -> KnowledgeEntry:
        """
        Add an entry; the index is rebuilt on the next search.

        Raises:
            ValueError: Empty text
        """
        if not text or not text.strip():
            raise ValueError("Knowledge text must not be empty")

        entry = KnowledgeEntry(id=f"custom-{uuid.uuid4().hex[:12]}", text=text.strip(), metadata=metadata or {})
        self._entries.append(entry)
        self._matrix = None
        logger.info(f"Added knowledge entry {entry.id}")
        return entry

    def entries(self) -> List[KnowledgeEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def build_index(self) -> None:
        """Compute the normalized TF-IDF matrix for all entries"""
        documents = [tokenize(entry.text) for entry in self._entries]
        vocabulary: Dict[str, int] = {}
        for tokens in documents:
            for token in tokens:
                vocabulary.setdefault(token, len(vocabulary))

        n_docs = len(documents)
        counts = np.zeros((n_docs, len(vocabulary)))
        for row, tokens in enumerate(documents):
            for token, count in Counter(tokens).items():
                counts[row, vocabulary[token]] = count

        document_frequency = np.count_nonzero(counts, axis=0)
        # Smoothed idf, as in scikit-learn
        idf = np.log((1 + n_docs) / (1 + document_frequency)) + 1.0

        matrix = counts * idf
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0

        self._vocabulary = vocabulary
        self._idf = idf
        self._matrix = matrix / norms
        logger.debug(f"Knowledge index built: {n_docs} entries, {len(vocabulary)} terms")

    def search(self, query: str, top_k: int = 3) -> List[Tuple[KnowledgeEntry, float]]:
        """
        Rank entries by cosine similarity to the query.

        Returns:
            Up to top_k (entry, score) pairs with score > 0, best first
        """
        if not self._entries:
            return []
        if self._matrix is None:
            self.build_index()

        vector = np.zeros(len(self._vocabulary))
        for token, count in Counter(tokenize(query)).items():
            index = self._vocabulary.get(token)
            if index is not None:
                vector[index] = count
        vector = vector * self._idf

        norm = np.linalg.norm(vector)
        if norm == 0 or math.isnan(norm):
            return []

        scores = self._matrix @ (vector / norm)
        ranked = np.argsort(-scores, kind="stable")[:top_k]
        return [(self._entries[i], float(scores[i])) for i in ranked if scores[i] > 0]
