# RAG 引擎：分段、向量化、检索、生成、会话
from rag_engine.errors import RAGError
from rag_engine.service import AnswerStream, PromptPlan, RAGService

__all__ = ["RAGService", "AnswerStream", "PromptPlan", "RAGError"]
