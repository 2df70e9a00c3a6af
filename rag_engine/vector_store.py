"""
Qdrant Vector Store 封装
每个应用一个 Collection，字段约定：
- point id: 由文档 ID 生成的 UUIDv5（Qdrant 只接受 int / UUID）
- payload: {"id": 文档 ID, "text": 片段文本, "metadata": {...}}
- vector: 固定维度的稠密向量，COSINE 相似度
"""
import logging
import math
import threading
import uuid
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import QdrantClient
from qdrant_client.http import models as qmodels
from qdrant_client.http.exceptions import UnexpectedResponse

from rag_engine.errors import (
    CollectionNotFoundError,
    DimensionMismatchError,
    InvalidRequestError,
    RAGError,
    RetrievalError,
)
from rag_engine.filters import parse_filter_expr
from rag_engine.models import DocumentChunk, SearchResult
from rag_engine.settings import Settings

logger = logging.getLogger(__name__)

INDEX_TYPES = ("HNSW", "IVF_FLAT", "IVF_PQ", "AUTOINDEX", "FLAT")
DEFAULT_OUTPUT_FIELDS = ["id", "text", "metadata", "vector"]
MIN_SEARCH_EF = 100


def point_id_for(doc_id: str) -> str:
    """文档 ID → Qdrant point id（确定性，跨进程一致）"""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"rag-chunk:{doc_id}"))


def create_qdrant_client(settings: Settings) -> QdrantClient:
    """有 QDRANT_URL 时连接远程服务，否则使用嵌入式存储"""
    if settings.qdrant_url:
        return QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key, timeout=30)
    if settings.qdrant_path == ":memory:":
        return QdrantClient(location=":memory:")
    return QdrantClient(path=settings.qdrant_path)


def _wrap_error(action: str, error: Exception) -> RetrievalError:
    if isinstance(error, UnexpectedResponse):
        return RetrievalError(
            f"{action}失败: {error}",
            upstream_status=error.status_code,
            upstream_message=error.reason_phrase,
        )
    return RetrievalError(f"{action}失败: {error}")


def _index_settings(index_type: str, index_params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """把索引类型/参数映射为 Qdrant 的 collection 配置"""
    params = index_params or {}
    if index_type == "HNSW":
        return {
            "hnsw_config": qmodels.HnswConfigDiff(
                m=int(params.get("M", 16)),
                ef_construct=int(params.get("efConstruction", 200)),
            )
        }
    if index_type in ("IVF_FLAT", "IVF_PQ"):
        # Qdrant 没有 IVF 索引：nlist 映射为图的出度，IVF_PQ 额外开启乘积量化
        nlist = int(params.get("nlist", 1024))
        settings: Dict[str, Any] = {
            "hnsw_config": qmodels.HnswConfigDiff(m=max(4, min(64, nlist // 64)))
        }
        if index_type == "IVF_PQ":
            settings["quantization_config"] = qmodels.ProductQuantization(
                product=qmodels.ProductQuantizationConfig(
                    compression=qmodels.CompressionRatio.X16,
                    always_ram=True,
                )
            )
        return settings
    if index_type == "FLAT":
        # m=0 不建图，全部走暴力检索
        return {"hnsw_config": qmodels.HnswConfigDiff(m=0)}
    return {}


def _vector_size(info: qmodels.CollectionInfo) -> Optional[int]:
    vectors = info.config.params.vectors
    if isinstance(vectors, qmodels.VectorParams):
        return vectors.size
    if isinstance(vectors, dict) and vectors:
        first = next(iter(vectors.values()))
        return first.size
    return None


class QdrantVectorStore:
    """向量库操作（与具体应用无关，按 collection 名称操作）"""

    def __init__(self, client: QdrantClient):
        self.client = client
        self._loaded: set = set()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, collection_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(collection_name)
            if lock is None:
                lock = self._locks[collection_name] = threading.Lock()
            return lock

    def has_collection(self, collection_name: str) -> bool:
        try:
            return self.client.collection_exists(collection_name)
        except Exception as e:
            raise _wrap_error(f"检查 Collection {collection_name} ", e) from e

    def _require_collection(self, collection_name: str) -> None:
        if not self.has_collection(collection_name):
            raise CollectionNotFoundError(collection_name)

    # ------------------------------------------------------------------
    # Collection 管理
    # ------------------------------------------------------------------
    def create_collection(
        self,
        collection_name: str,
        dimension: int,
        index_type: str = "HNSW",
        index_params: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        创建 Collection（已存在则直接返回）

        Args:
            collection_name: Collection 名称
            dimension: 向量维度（创建后不可修改）
            index_type: HNSW / IVF_FLAT / IVF_PQ / AUTOINDEX / FLAT
            index_params: 索引参数，如 {"M": 16, "efConstruction": 200}
            description: 描述（仅用于日志）

        Returns:
            {"exists": bool, "collectionName": str}
        """
        if not isinstance(dimension, int) or dimension < 1:
            raise InvalidRequestError(f"向量维度无效: {dimension}")
        index_type = (index_type or "HNSW").upper()
        if index_type not in INDEX_TYPES:
            raise InvalidRequestError(f"不支持的索引类型: {index_type}")

        with self._lock_for(collection_name):
            try:
                if self.client.collection_exists(collection_name):
                    existing = _vector_size(self.client.get_collection(collection_name))
                    if existing is not None and existing != dimension:
                        raise DimensionMismatchError(
                            f"Collection {collection_name} 已存在且向量维度为 {existing}，与请求的 {dimension} 不一致"
                        )
                    logger.info(f"Collection {collection_name} 已存在")
                    return {"exists": True, "collectionName": collection_name}

                self.client.create_collection(
                    collection_name=collection_name,
                    vectors_config=qmodels.VectorParams(size=dimension, distance=qmodels.Distance.COSINE),
                    **_index_settings(index_type, index_params),
                )
                self.client.create_payload_index(
                    collection_name=collection_name,
                    field_name="id",
                    field_schema=qmodels.PayloadSchemaType.KEYWORD,
                )
                self.client.create_payload_index(
                    collection_name=collection_name,
                    field_name="text",
                    field_schema=qmodels.PayloadSchemaType.TEXT,
                )
            except RAGError:
                raise
            except Exception as e:
                logger.error(f"创建 Collection 失败: {e}")
                raise _wrap_error("创建 Collection ", e) from e

        logger.info(
            f"Collection {collection_name} 创建成功，向量维度: {dimension}，索引类型: {index_type}"
            + (f"（{description}）" if description else "")
        )
        return {"exists": False, "collectionName": collection_name}

    def ensure_loaded(self, collection_name: str) -> None:
        """
        确保 Collection 可检索；不存在时直接返回
        Qdrant 中处于 grey 状态（优化被挂起）的 collection 需要触发一次优化
        """
        if collection_name in self._loaded:
            return
        with self._lock_for(collection_name):
            if collection_name in self._loaded:
                return
            try:
                if not self.client.collection_exists(collection_name):
                    return
                info = self.client.get_collection(collection_name)
                if info.status == "red":
                    raise RetrievalError(f"Collection {collection_name} 状态异常（red），无法检索")
                if info.status == "grey":
                    self.client.update_collection(
                        collection_name=collection_name,
                        optimizers_config=qmodels.OptimizersConfigDiff(),
                    )
                    logger.info(f"[确保加载] Collection \"{collection_name}\" 已触发优化")
            except RAGError:
                raise
            except Exception as e:
                logger.error(f"[确保加载] Collection \"{collection_name}\" 加载失败: {e}")
                raise _wrap_error("确保 Collection 加载", e) from e
            self._loaded.add(collection_name)

    def list_collections(self) -> List[str]:
        try:
            return [c.name for c in self.client.get_collections().collections]
        except Exception as e:
            logger.error(f"列出 Collections 失败: {e}")
            raise _wrap_error("列出 Collections ", e) from e

    def delete_collection(self, collection_name: str) -> bool:
        """删除 Collection，返回删除前是否存在"""
        with self._lock_for(collection_name):
            try:
                if not self.client.collection_exists(collection_name):
                    logger.info(f"Collection {collection_name} 不存在，跳过删除")
                    return False
                self.client.delete_collection(collection_name)
            except Exception as e:
                logger.error(f"删除 Collection 失败: {e}")
                raise _wrap_error("删除 Collection ", e) from e
            self._loaded.discard(collection_name)
        logger.info(f"成功删除 Collection: {collection_name}")
        return True

    def get_collection_info(self, collection_name: str) -> Dict[str, Any]:
        """获取 Collection 结构、行数和索引信息"""
        self._require_collection(collection_name)
        try:
            info = self.client.get_collection(collection_name)
        except Exception as e:
            logger.error(f"获取 Collection 信息失败: {e}")
            raise _wrap_error("获取 Collection 信息", e) from e

        dimension = _vector_size(info)
        hnsw = info.config.hnsw_config
        hnsw_m = hnsw.m if hnsw is not None else None
        indexes = [{
            "fieldName": "vector",
            "indexType": "FLAT" if hnsw_m == 0 else "HNSW",
            "metricType": "COSINE",
            "params": {"M": hnsw_m, "efConstruction": hnsw.ef_construct if hnsw is not None else None},
            "quantization": info.config.quantization_config is not None,
        }]
        for field_name, schema in (info.payload_schema or {}).items():
            indexes.append({
                "fieldName": field_name,
                "indexType": str(schema.data_type.value if hasattr(schema.data_type, "value") else schema.data_type),
                "points": schema.points,
            })

        return {
            "collectionName": collection_name,
            "status": str(info.status.value if hasattr(info.status, "value") else info.status),
            "schema": [
                {"name": "id", "dataType": "keyword", "isPrimaryKey": True},
                {"name": "text", "dataType": "text"},
                {"name": "vector", "dataType": "float_vector", "dim": dimension},
                {"name": "metadata", "dataType": "json"},
            ],
            "rowCount": info.points_count or 0,
            "indexedVectorsCount": info.indexed_vectors_count or 0,
            "segmentsCount": info.segments_count,
            "indexes": indexes,
        }

    # ------------------------------------------------------------------
    # 文档读写
    # ------------------------------------------------------------------
    def add_documents(self, collection_name: str, documents: Sequence[DocumentChunk]) -> int:
        """
        插入文档并等待落盘，之后确保 Collection 可检索
        任一环节失败，整批视为失败并抛出
        """
        if not documents:
            return 0
        ids = [doc.id for doc in documents]
        if len(set(ids)) != len(ids):
            raise InvalidRequestError("同一批文档中存在重复的 ID")

        self._require_collection(collection_name)
        try:
            expected = _vector_size(self.client.get_collection(collection_name))
        except Exception as e:
            raise _wrap_error("读取 Collection 维度", e) from e
        for doc in documents:
            if expected is not None and len(doc.vector) != expected:
                raise DimensionMismatchError(
                    f"文档 {doc.id} 的向量维度 {len(doc.vector)} 与 Collection 维度 {expected} 不一致"
                )

        point_ids = [point_id_for(doc_id) for doc_id in ids]
        try:
            existing = self.client.retrieve(
                collection_name=collection_name, ids=point_ids, with_payload=True, with_vectors=False
            )
        except Exception as e:
            raise _wrap_error("检查文档 ID", e) from e
        if existing:
            dup = [(p.payload or {}).get("id", str(p.id)) for p in existing]
            raise InvalidRequestError(f"文档 ID 已存在: {', '.join(dup[:5])}")

        points = [
            qmodels.PointStruct(
                id=pid,
                vector=doc.vector,
                payload={"id": doc.id, "text": doc.text, "metadata": doc.metadata or {}},
            )
            for pid, doc in zip(point_ids, documents)
        ]
        try:
            self.client.upsert(collection_name=collection_name, points=points, wait=True)
        except Exception as e:
            logger.error(f"添加文档失败: {e}")
            raise _wrap_error("添加文档", e) from e

        self.ensure_loaded(collection_name)
        logger.info(f"成功添加 {len(points)} 条文档到 Collection {collection_name}")
        return len(points)

    def similarity_search(
        self,
        collection_name: str,
        query_vector: Sequence[float],
        top_k: int = 5,
        threshold: float = 0.7,
    ) -> List[SearchResult]:
        """
        向量相似度搜索

        Args:
            collection_name: Collection 名称
            query_vector: 查询向量
            top_k: 返回 Top K 结果
            threshold: 相似度阈值（0-1），低于阈值的结果在本地过滤

        Returns:
            SearchResult 列表（按相似度降序）；Collection 不存在时返回 []
        """
        if not self.has_collection(collection_name):
            logger.error(f"[向量搜索] Collection \"{collection_name}\" 不存在")
            return []

        self.ensure_loaded(collection_name)

        if not isinstance(query_vector, (list, tuple)) or len(query_vector) == 0:
            raise RetrievalError("查询向量格式错误：必须是非空数组")
        try:
            vector = [float(v) for v in query_vector]
        except (TypeError, ValueError):
            raise RetrievalError("查询向量包含非数字值")
        if any(not math.isfinite(v) for v in vector):
            raise RetrievalError("查询向量包含非数字值")

        top_k = max(1, int(top_k))
        ef = max(top_k * 2, MIN_SEARCH_EF)
        try:
            response = self.client.query_points(
                collection_name=collection_name,
                query=vector,
                limit=top_k,
                search_params=qmodels.SearchParams(hnsw_ef=ef),
                with_payload=True,
            )
        except Exception as e:
            logger.error(f"[向量搜索] 搜索失败: {e}")
            raise _wrap_error("向量搜索", e) from e

        points = response.points or []
        logger.info(
            f"[向量搜索] 原始结果: {len(points)} 条 (topK={top_k}, threshold={threshold}), 相似度: "
            + ", ".join(f"[{i}]{p.score:.4f}" for i, p in enumerate(points))
        )

        results = []
        for idx, point in enumerate(points):
            payload = point.payload or {}
            text = payload.get("text") or ""
            if point.score < threshold or not text.strip():
                continue
            results.append(SearchResult(
                id=str(payload.get("id") or point.id or f"result_{idx}"),
                text=text,
                metadata=payload.get("metadata") or {},
                score=point.score,
            ))

        logger.info(f"[向量搜索] 过滤后结果: {len(results)} 条 (阈值={threshold})")
        return results

    def delete_documents(self, collection_name: str, ids: Sequence[str]) -> int:
        """按文档 ID 删除"""
        if not ids:
            raise InvalidRequestError("ids 数组不能为空")
        self._require_collection(collection_name)
        try:
            self.client.delete(
                collection_name=collection_name,
                points_selector=qmodels.PointIdsList(points=[point_id_for(i) for i in ids]),
                wait=True,
            )
        except Exception as e:
            logger.error(f"删除文档失败: {e}")
            raise _wrap_error("删除文档", e) from e
        logger.info(f"成功删除 {len(ids)} 条文档，Collection: {collection_name}")
        return len(ids)

    def delete_by_expr(self, collection_name: str, expr: str) -> None:
        """按过滤表达式删除，如 id == 'xxx' 或 text like '%keyword%'"""
        query_filter = parse_filter_expr(expr)
        if query_filter is None:
            raise InvalidRequestError("过滤表达式不能为空")
        self._require_collection(collection_name)
        try:
            self.client.delete(
                collection_name=collection_name,
                points_selector=qmodels.FilterSelector(filter=query_filter),
                wait=True,
            )
        except Exception as e:
            logger.error(f"通过表达式删除文档失败: {e}")
            raise _wrap_error("通过表达式删除文档", e) from e
        logger.info(f"成功通过表达式删除文档，Collection: {collection_name}, Expr: {expr}")

    def query_collection(
        self,
        collection_name: str,
        limit: int = 10,
        offset: int = 0,
        expr: Optional[str] = None,
        output_fields: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """
        分页查询 Collection 数据（向量只返回维度提示）

        Returns:
            {"collectionName", "total", "limit", "offset", "data"}
        """
        limit = max(1, int(limit))
        offset = max(0, int(offset))
        fields = list(output_fields) if output_fields else list(DEFAULT_OUTPUT_FIELDS)
        query_filter = parse_filter_expr(expr)
        self._require_collection(collection_name)

        try:
            records, _ = self.client.scroll(
                collection_name=collection_name,
                scroll_filter=query_filter,
                limit=offset + limit,
                with_payload=True,
                with_vectors="vector" in fields,
            )
        except Exception as e:
            logger.error(f"查询 Collection 数据失败: {e}")
            raise _wrap_error("查询 Collection 数据", e) from e

        data = []
        for record in records[offset:offset + limit]:
            payload = record.payload or {}
            item: Dict[str, Any] = {"id": payload.get("id") or str(record.id)}
            if "text" in fields:
                item["text"] = payload.get("text") or ""
            if "metadata" in fields:
                item["metadata"] = payload.get("metadata") or {}
            if "vector" in fields:
                item["vector"] = f"[{len(record.vector)} dimensions]" if record.vector else None
            data.append(item)

        return {
            "collectionName": collection_name,
            "total": len(data),
            "limit": limit,
            "offset": offset,
            "data": data,
        }

    def count_collection(self, collection_name: str, expr: Optional[str] = None) -> int:
        query_filter = parse_filter_expr(expr)
        self._require_collection(collection_name)
        try:
            result = self.client.count(collection_name=collection_name, count_filter=query_filter, exact=True)
        except Exception as e:
            logger.error(f"统计 Collection 文档数量失败: {e}")
            raise _wrap_error("统计 Collection 文档数量", e) from e
        return result.count
