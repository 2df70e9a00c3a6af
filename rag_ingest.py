"""
RAG 文档入库脚本
把本地 PDF / Markdown / TXT 文件解析、切分、向量化后写入应用的知识库

用法：
    python rag_ingest.py <app_id> <file> [<file> ...]

向量库需配置 QDRANT_URL（远程）或 QDRANT_PATH（本地目录），
否则默认的内存库在脚本退出后即丢失
"""
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

from rag_engine.config_store import RAGConfigStore
from rag_engine.db import get_session_factory
from rag_engine.llm import LLMClient
from rag_engine.loaders import extract_text
from rag_engine.models import IngestDocument
from rag_engine.service import RAGService
from rag_engine.sessions import SessionStore
from rag_engine.settings import get_settings
from rag_engine.vector_store import QdrantVectorStore, create_qdrant_client

USAGE = "用法: python rag_ingest.py <app_id> <file> [<file> ...]"


def build_service() -> RAGService:
    settings = get_settings()
    session_factory = get_session_factory()
    return RAGService(
        config_store=RAGConfigStore(session_factory),
        session_store=SessionStore(session_factory),
        vector_store=QdrantVectorStore(create_qdrant_client(settings)),
        llm=LLMClient(settings.llm_api_key, settings.llm_base_url, settings.llm_model),
        history_rounds=settings.history_rounds,
    )


def load_documents(paths):
    """读取文件并提取文本，返回 (documents, skipped)"""
    documents, skipped = [], []
    for path in paths:
        if not path.exists():
            print(f"   ❌ 文件不存在: {path}")
            skipped.append(path.name)
            continue
        result = extract_text(path.read_bytes(), path.name)
        if result.skipped or result.error:
            print(f"   ⚠️ 跳过 {path.name}: {result.error or '不支持的文件格式'}")
            skipped.append(path.name)
            continue
        print(f"   ✓ {path.name}: {len(result.text)} 字符")
        documents.append(IngestDocument(text=result.text, metadata={"source": path.name}))
    return documents, skipped


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) < 2:
        print(USAGE)
        return 1
    try:
        app_id = int(argv[0])
    except ValueError:
        print(f"❌ app_id 必须是整数: {argv[0]}")
        print(USAGE)
        return 1
    paths = [Path(p) for p in argv[1:]]

    print("=" * 60)
    print("📚 RAG 文档入库工具")
    print("=" * 60)
    print(f"应用: {app_id}")
    print(f"文件: {len(paths)} 个")
    if not os.getenv("QDRANT_URL") and get_settings().qdrant_path == ":memory:":
        print("⚠️ 未配置 QDRANT_URL / QDRANT_PATH，数据只保存在内存中")
    print()

    service = build_service()
    config = service.config_store.init_config(app_id)
    print(f"🧩 分段配置: maxLength={config.chunk_max_length}, overlap={config.chunk_overlap}")
    print(f"🧠 Embedding: {config.embedding_model} (dim={config.vector_dimension})")
    print()

    print("📄 [Step 1/3] 解析文件...")
    documents, skipped = load_documents(paths)
    if not documents:
        print("❌ 没有成功处理的文档")
        return 1
    print()

    print("🔍 [Step 2/3] 分段、向量化并写入向量库...")
    start = time.time()
    result = service.ingest(app_id, documents)
    print(f"   文档: {result.count} 个，片段: {result.chunk_count} 个")
    print(f"   耗时: {time.time() - start:.1f}s")
    print()

    print("✅ [Step 3/3] 验证...")
    total = service.vector_store.count_collection(config.collection_name)
    print(f"   Collection '{config.collection_name}': {total} 条数据")
    if skipped:
        print(f"   跳过文件: {', '.join(skipped)}")

    print()
    print("=" * 60)
    print("🎉 入库完成！")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
