"""
Retrieval and prompt assembly over a session's document corpus.

The query is embedded with the same EmbeddingClient that indexed the
documents, every stored chunk vector is scored against it, and the top-K
chunks come back as Source snippets. How many depends on the call site
(see RetrievalConfig): a few for auto-summaries, more for questions and the
search panel.
"""

import logging

from .config import RetrievalConfig
from .document_store import DocumentStore
from .errors import CompletionFailed, NotFound
from .providers.base import CompletionProvider
from .providers.embeddings import EmbeddingClient
from .similarity import rank
from .types import Message, Source, utc_now

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer using the document excerpts provided "
    "in the conversation. If the excerpts do not contain the answer, say so."
)


def format_context(sources: list[Source]) -> str:
    """Number the snippets so the model can refer to them."""
    return "\n\n".join(
        f"[{i}] ({s.file_name}, chunk {s.index + 1})\n{s.text}"
        for i, s in enumerate(sources, 1)
    )


def summary_prompt(doc_name: str) -> str:
    """The user-visible request recorded when a document is auto-summarised."""
    return (
        f"Summarizing the uploaded {doc_name} document using its content. "
        "Highlight main sections, topics, and key takeaways."
    )


def question_prompt(question: str) -> str:
    """The user-visible message recorded for a question answered from documents."""
    return (
        "Use relevant information from the uploaded document to answer the question. "
        f"Sources will be shown below.\n\nQuestion: {question}"
    )


def history_for_model(history: list[Message]) -> list[dict[str, str]]:
    """Chat history as provider messages, without thinking blocks."""
    return [
        {"role": m.role, "content": m.answer}
        for m in history
        if m.role in ("user", "assistant") and m.answer
    ]


class RagEngine:
    """Search, retrieval and question answering for one store layout."""

    def __init__(
        self,
        documents: DocumentStore,
        embedder: EmbeddingClient,
        completion: CompletionProvider | None = None,
        retrieval: RetrievalConfig | None = None,
    ):
        self.documents = documents
        self.embedder = embedder
        self.completion = completion
        self.retrieval = retrieval or RetrievalConfig()

    def _rank(self, session_id: str, query: str, k: int) -> list[Source]:
        corpus = self.documents.load_corpus(session_id)
        if not corpus:
            logger.debug("No embedded documents in %s", session_id)
            return []

        query_vector = self.embedder.embed(query)
        pairs = [
            (vector, (doc, i))
            for doc in corpus
            for i, vector in enumerate(doc.embeddings)
        ]
        return [
            Source(text=doc.chunks[i], index=i, file_name=doc.name, score=round(score, 4))
            for (doc, i), score in rank(query_vector, pairs, k)
        ]

    def search(self, session_id: str, query: str, k: int | None = None) -> list[Source]:
        """Top chunks for the search panel."""
        return self._rank(session_id, query, self.retrieval.search_k if k is None else k)

    def retrieve(self, session_id: str, question: str, k: int | None = None) -> list[Source]:
        """Top chunks to answer a question with."""
        return self._rank(session_id, question, self.retrieval.question_k if k is None else k)

    def summary_sources(self, session_id: str, doc_id: str, k: int | None = None) -> list[Source]:
        """
        The leading chunks of one document, for auto-summarisation.

        Raises:
            NotFound: If the document has no readable data
        """
        doc = self.documents.load_document(session_id, doc_id)
        if doc is None:
            raise NotFound(f"Document not found: {doc_id}")
        k = self.retrieval.summary_k if k is None else k
        return [
            Source(text=chunk, index=i, file_name=doc.name)
            for i, chunk in enumerate(doc.chunks[:max(k, 0)])
        ]

    def build_messages(
        self,
        prompt: str,
        sources: list[Source],
        history: list[Message] | None = None,
    ) -> list[dict[str, str]]:
        """Provider messages: system prompt, prior turns, then prompt plus excerpts."""
        content = prompt
        if sources:
            content = f"{prompt}\n\nDocument excerpts:\n\n{format_context(sources)}"
        return (
            [{"role": "system", "content": SYSTEM_PROMPT}]
            + history_for_model(history or [])
            + [{"role": "user", "content": content}]
        )

    def answer(
        self,
        prompt: str,
        sources: list[Source],
        history: list[Message] | None = None,
    ) -> Message:
        """
        Ask the completion provider and wrap the reply as an assistant message.

        Raises:
            CompletionFailed: If there is no completion provider or it failed
        """
        if self.completion is None:
            raise CompletionFailed("No completion model configured")
        reply = self.completion.chat(self.build_messages(prompt, sources, history))
        return Message(
            role="assistant",
            content=reply,
            timestamp=utc_now(),
            sources=list(sources),
        )

    def ask(
        self,
        session_id: str,
        question: str,
        history: list[Message] | None = None,
        k: int | None = None,
    ) -> Message:
        """Retrieve context for ``question`` and answer it."""
        sources = self.retrieve(session_id, question, k)
        logger.info("Answering with %d sources from %s", len(sources), session_id)
        return self.answer(question_prompt(question), sources, history)

    def summarize(self, session_id: str, doc_id: str, history: list[Message] | None = None) -> Message:
        """Auto-summary of one document from its leading chunks."""
        sources = self.summary_sources(session_id, doc_id)
        name = sources[0].file_name if sources else doc_id
        return self.answer(summary_prompt(name), sources, history)
