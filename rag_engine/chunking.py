"""
文本分段模块
按优先级分隔符递归切分文本，再按最大长度合并，并在相邻片段之间保留重叠字符
"""
import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from rag_engine.errors import InvalidRequestError

logger = logging.getLogger(__name__)


# ========================
# 配置常量
# ========================
DEFAULT_CHUNK_MAX_LENGTH = 2048
DEFAULT_CHUNK_OVERLAP = 100
DEFAULT_SEPARATORS = [
    "\n\n\n", "\n\n", "\n", "。", "！", "？", ". ", "! ", "? ", " ", "",
]
KEYWORDS_PER_CHUNK = 8


class RecursiveTextSplitter:
    """
    递归字符分段器

    1. 依次尝试分隔符（从粗到细），用第一个在文本中出现的分隔符切分
    2. 仍超过 max_length 的片段，继续用后面的分隔符递归切分
    3. 把相邻片段合并到不超过 max_length，新片段以前一片段末尾 overlap 个字符开头
    """

    def __init__(
        self,
        max_length: int = DEFAULT_CHUNK_MAX_LENGTH,
        overlap: int = DEFAULT_CHUNK_OVERLAP,
        separators: Optional[Sequence[str]] = None,
    ):
        if not isinstance(max_length, int) or max_length < 1:
            raise InvalidRequestError(f"分段最大长度必须是正整数: {max_length}")
        if not isinstance(overlap, int) or overlap < 0:
            raise InvalidRequestError(f"分段重叠长度不能为负数: {overlap}")
        if overlap >= max_length:
            raise InvalidRequestError(
                f"分段重叠长度 ({overlap}) 必须小于最大长度 ({max_length})"
            )
        seps = list(separators) if separators else list(DEFAULT_SEPARATORS)
        if any(not isinstance(s, str) for s in seps):
            raise InvalidRequestError("分隔符必须是字符串数组")

        self.max_length = max_length
        self.overlap = overlap
        self.separators = seps

    def split_text(self, text: str) -> List[str]:
        """切分单个文本，返回非空片段"""
        text = text.replace("\r\n", "\n")
        if not text.strip():
            return []
        if len(text) <= self.max_length:
            return [text]

        pieces = self._split_recursive(text, self.separators)
        return [c for c in self._merge(pieces) if c.strip()]

    def _split_recursive(self, text: str, separators: List[str]) -> List[str]:
        # 找到第一个出现在文本中的分隔符；空字符串表示逐字切分
        separator = None
        remaining: List[str] = []
        for i, sep in enumerate(separators):
            if sep == "" or sep in text:
                separator = sep
                remaining = separators[i + 1:]
                break

        if separator is None:
            return self._hard_cut(text)

        pieces: List[str] = []
        for part in _split_keep_separator(text, separator):
            if len(part) <= self.max_length:
                pieces.append(part)
            elif remaining:
                pieces.extend(self._split_recursive(part, remaining))
            else:
                pieces.extend(self._hard_cut(part))
        return pieces

    def _hard_cut(self, text: str) -> List[str]:
        step = self.max_length
        return [text[i:i + step] for i in range(0, len(text), step)]

    def _merge(self, pieces: Iterable[str]) -> List[str]:
        chunks: List[str] = []
        current = ""

        for piece in pieces:
            if len(current) + len(piece) <= self.max_length:
                current += piece
                continue

            chunks.append(current)
            # 新片段以上一片段的末尾字符开头，总长度不超过 max_length
            keep = min(self.overlap, self.max_length - len(piece), len(current))
            tail = current[len(current) - keep:] if keep > 0 else ""
            current = tail + piece

        if current:
            chunks.append(current)
        return chunks


def _split_keep_separator(text: str, separator: str) -> List[str]:
    """按分隔符切分，分隔符保留在前一段末尾，拼接结果等于原文"""
    if separator == "":
        return list(text)
    parts = text.split(separator)
    out = [p + separator for p in parts[:-1]]
    out.append(parts[-1])
    return [p for p in out if p]


def chunk_texts(
    texts: Sequence[Any],
    max_length: int = DEFAULT_CHUNK_MAX_LENGTH,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
    separators: Optional[Sequence[str]] = None,
) -> List[str]:
    """
    将多段文本切分成片段

    Args:
        texts: 原始文本列表（非字符串或空文本会被跳过）
        max_length: 每个片段的最大字符数
        overlap: 相邻片段之间的重叠字符数（必须小于 max_length）
        separators: 分隔符列表，从粗到细

    Returns:
        按输入顺序排列的片段列表
    """
    splitter = RecursiveTextSplitter(max_length, overlap, separators)
    out: List[str] = []
    for text in texts or []:
        if not text or not isinstance(text, str):
            continue
        out.extend(splitter.split_text(text))
    logger.debug(f"[分段] {len(texts or [])} 段文本 → {len(out)} 个片段 (maxLength={max_length}, overlap={overlap})")
    return out


def extract_keywords(text: str, top_k: int = KEYWORDS_PER_CHUNK) -> List[str]:
    """使用 jieba 提取关键词"""
    import jieba.analyse
    return jieba.analyse.extract_tags(text, topK=top_k)


_stamp_lock = threading.Lock()
_last_stamp = 0


def next_chunk_stamp() -> int:
    """毫秒时间戳，进程内严格递增（同一毫秒内多次入库也不会生成重复 ID）"""
    global _last_stamp
    with _stamp_lock:
        _last_stamp = max(int(time.time() * 1000), _last_stamp + 1)
        return _last_stamp


def build_chunk_documents(
    chunks: Sequence[str],
    base_metadata: Optional[Dict[str, Any]] = None,
    id_prefix: Optional[str] = None,
    start_index: int = 0,
    with_keywords: bool = True,
) -> List[Dict[str, Any]]:
    """
    把片段组装成入库文档 [{id, text, metadata}]

    Args:
        chunks: 同一来源文本切出的片段
        base_metadata: 来源文档的 metadata，复制到每个片段
        id_prefix: ID 前缀，默认 chunk_<毫秒时间戳>
        start_index: ID 序号起点（一次入库多个文档时连续编号）
        with_keywords: 是否用 jieba 提取关键词写入 metadata
    """
    prefix = id_prefix or f"chunk_{next_chunk_stamp()}"
    total = len(chunks)
    documents = []
    for idx, text in enumerate(chunks):
        metadata = dict(base_metadata or {})
        metadata.update({"chunkIndex": idx, "chunkTotal": total})
        if with_keywords:
            metadata["keywords"] = extract_keywords(text)
        documents.append({
            "id": f"{prefix}_{start_index + idx}",
            "text": text,
            "metadata": metadata,
        })
    return documents
