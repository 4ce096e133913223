import sys

from grounded_rag.logging_utils import setup_logging
from grounded_rag.pipeline import RetrievalPipeline
from grounded_rag.prompting import PromptTemplateStore
from grounded_rag.schema import ChunkAnnotation, ScoredChunk
from grounded_rag.settings import RetrievalConfigCache, load_settings
from grounded_rag.store import InMemoryChunkStore

SAMPLE_CHUNKS = [
    ScoredChunk(
        chunk_id=1,
        content="Before installation, pressure-test the system to 10 bar and check every joint for leaks.",
        relevance=0.0,
        document_id=1,
        chunk_index=0,
        filename="Installation manual.pdf",
        document_type="instruction",
        section_path="1.1",
        page_number=5,
        page_end=6,
    ),
    ScoredChunk(
        chunk_id=2,
        content="Fitting 16x2 has a working pressure of 10 bar and ships with an EVOH ring.",
        relevance=0.0,
        document_id=2,
        chunk_index=0,
        filename="Fittings catalog.xlsx",
        document_type="catalog",
        section_path="A.2",
        page_number=12,
        element_type="table",
        has_table=True,
        table_rows=(("Size", "Pressure"), ("16x2", "10 bar"), ("20x2", "10 bar")),
        annotation=ChunkAnnotation(is_nomenclature_table=True, product_group_id=7, product_group_name="Fitting 16x2"),
    ),
]


def main() -> None:
    """Run the pipeline over built-in sample chunks and print the prompt pieces."""
    setup_logging("DEBUG")
    question = " ".join(sys.argv[1:]) or "What is the working pressure of fitting 16x2?"
    llm_settings, paths = load_settings()
    config = RetrievalConfigCache(paths.config_path).get()
    pipeline = RetrievalPipeline(
        InMemoryChunkStore(SAMPLE_CHUNKS),
        prompt_templates=PromptTemplateStore(paths.system_prompt_path),
        llm_settings=llm_settings,
    )
    result = pipeline.run(question, config)

    print("=== SYSTEM PROMPT ===")
    print(result.system_prompt)
    print("\n=== USER MESSAGE ===")
    print(result.user_message)
    print("\n=== SOURCES ===")
    for source in result.sources:
        print(source)
    print("\n=== DIAGNOSTICS ===")
    print(result.diagnostics)


if __name__ == "__main__":
    main()
