"""
上传文件 → 纯文本
支持 PDF（PyMuPDF）和 Markdown / TXT，其他类型跳过
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {"md", "markdown", "txt"}
MIME_EXTENSIONS = {
    "application/pdf": "pdf",
    "text/markdown": "md",
    "text/x-markdown": "md",
    "text/plain": "txt",
}


@dataclass
class ExtractResult:
    text: str = ""
    skipped: bool = False
    error: Optional[str] = None


def detect_extension(filename: Optional[str], mime: Optional[str] = None) -> str:
    """优先使用文件扩展名，没有时按 MIME 类型推断"""
    ext = Path(filename or "").suffix.lower().lstrip(".")
    if ext:
        return ext
    return MIME_EXTENSIONS.get((mime or "").split(";")[0].strip().lower(), "")


def pdf_to_text(data: bytes) -> str:
    pages = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for page in doc:
            text = page.get_text("text")
            if text.strip():
                pages.append(text)
    return "\n".join(pages)


def extract_text(data: bytes, filename: Optional[str], mime: Optional[str] = None) -> ExtractResult:
    """
    提取文件文本

    Returns:
        ExtractResult；不支持的类型 skipped=True，解析失败 error 为原因
    """
    ext = detect_extension(filename, mime)
    try:
        if ext == "pdf":
            text = pdf_to_text(data)
        elif ext in TEXT_EXTENSIONS:
            text = data.decode("utf-8", errors="replace")
        else:
            logger.info(f"[文件解析] 跳过不支持的文件类型: {filename} ({mime or '-'})")
            return ExtractResult(skipped=True)
    except RuntimeError as e:  # fitz.FileDataError / EmptyFileError
        logger.warning(f"[文件解析] {filename} 解析失败: {e}")
        return ExtractResult(error=str(e))

    if not text.strip():
        return ExtractResult(error="文件内容为空")
    logger.info(f"[文件解析] {filename}: {len(text)} 字符")
    return ExtractResult(text=text)
