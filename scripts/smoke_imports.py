from grounded_rag.context import build_context
from grounded_rag.merging import merge_candidates
from grounded_rag.prompting import build_user_message
from grounded_rag.schema import ScoredChunk
from grounded_rag.settings import RetrievalConfig


if __name__ == "__main__":
    config = RetrievalConfig()
    dense = [ScoredChunk(chunk_id=1, content="alpha", relevance=0.9, document_id=1, chunk_index=0)]
    bm25 = [ScoredChunk(chunk_id=1, content="alpha", relevance=2.5, document_id=1, chunk_index=0)]
    merged = merge_candidates({"dense": dense, "bm25": bm25}, config.merge)
    built = build_context(merged, config.context)
    message = build_user_message(built.context, "alpha?")
    print(
        {
            "merged": len(merged),
            "sources": len(built.sources),
            "tokens": built.total_tokens,
            "message_chars": len(message),
        }
    )
