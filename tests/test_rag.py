"""Tests for knowledge retrieval and prompt enrichment."""

import copy

from switchboard.service.enrichment import MessageEnricher, format_external_context
from switchboard.service.rag import RAGService, compute_bm25_scores, tokenize_text
from switchboard.storage.models import Flow, KnowledgeChunk, RoutingResult


def _chunks(store, flow_id="flow-1"):
    for idx, text in enumerate(
        [
            "Returns are accepted within 30 days of delivery.",
            "Shipping to Canada takes five business days.",
            "Gift cards cannot be returned or exchanged.",
        ]
    ):
        store.add_knowledge_chunk(KnowledgeChunk(id=f"k{idx}", flow_id=flow_id, content=text, source=f"faq-{idx}"))


def _routing(prompt="Be helpful."):
    return RoutingResult(flow=Flow(id="flow-1", name="Shop", flow_config={"systemPrompt": prompt}))


class TestBM25:
    def test_tokenize_lowercases_and_splits(self):
        assert tokenize_text("Hello, World! v2") == ["hello", "world", "v2"]
        assert tokenize_text(None) == []

    def test_documents_without_shared_terms_score_zero(self):
        scores = compute_bm25_scores(["refund"], [["refund", "policy"], ["shipping"]])
        assert scores[0] > 0
        assert scores[1] == 0.0

    def test_rarer_terms_weigh_more(self):
        docs = [["returns", "days"], ["returns", "canada"], ["returns", "gift"]]
        scores = compute_bm25_scores(["returns", "canada"], docs)
        assert scores.index(max(scores)) == 1

    def test_empty_inputs(self):
        assert compute_bm25_scores([], [["a"]]) == [0.0]
        assert compute_bm25_scores(["a"], []) == []


class TestRAGService:
    def test_search_ranks_matching_chunks(self, store):
        _chunks(store)
        hits = RAGService(store).search("flow-1", "are returns accepted?")
        assert hits[0].id == "k0"
        assert all(hit.score > 0 for hit in hits)
        assert "k1" not in {hit.id for hit in hits}

    def test_search_scoped_to_flow(self, store):
        _chunks(store, flow_id="other")
        assert RAGService(store).search("flow-1", "returns") == []
        assert RAGService(store).search("flow-1", "") == []

    def test_format_respects_budget(self, store):
        _chunks(store)
        chunks = store.list_knowledge_chunks("flow-1")
        text = RAGService(store, max_context_chars=60).format_context_for_prompt(chunks)
        assert text.startswith("RELEVANT KNOWLEDGE:\n[1] (faq-0)")
        assert "[2]" not in text
        assert RAGService(store).format_context_for_prompt([]) == ""


class TestEnricher:
    def test_rag_appends_to_copy_of_routing(self, store):
        _chunks(store)
        routing = _routing()
        original = copy.deepcopy(routing)
        enricher = MessageEnricher(store, orchestrator=None, rag=RAGService(store))

        enhanced = enricher.enhance_with_rag(routing, "returns policy")

        assert enhanced.system_prompt.startswith("Be helpful.\n\nRELEVANT KNOWLEDGE:")
        assert routing.system_prompt == original.system_prompt

    def test_rag_skipped_without_flow_or_query(self, store):
        enricher = MessageEnricher(store, orchestrator=None, rag=RAGService(store))
        routing = _routing()
        assert enricher.enhance_with_rag(None, "returns") is None
        assert enricher.enhance_with_rag(routing, "   ") is routing
        assert enricher.enhance_with_rag(routing, "unrelated words") is routing

    def test_external_context_is_truncated(self):
        text = format_external_context({"crm": {"notes": "x" * 500}}, max_chars=100)
        assert text.startswith("EXTERNAL_CONTEXT_JSON:\n")
        assert text.endswith("...truncated...")
        assert format_external_context({}, 100) is None
