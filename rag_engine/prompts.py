"""
提示词模板
模板文件位于 rag_engine/templates/*.md，进程内只读取一次
"""
import re
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

from rag_engine.models import SearchResult

TEMPLATE_DIR = Path(__file__).parent / "templates"

SYSTEM_PROMPT = "rag-system-prompt"
USER_PROMPT = "rag-user-prompt"
NO_CONTEXT_SYSTEM_PROMPT = "rag-no-context-system-prompt"
NO_CONTEXT_USER_PROMPT = "rag-no-context-user-prompt"
TEMPLATE_NAMES = (SYSTEM_PROMPT, USER_PROMPT, NO_CONTEXT_SYSTEM_PROMPT, NO_CONTEXT_USER_PROMPT)

DEFAULT_APP_NAME = "该应用"
DEFAULT_USER_PROMPT = "请回答用户的问题。"

_VAR_RE = re.compile(r"\{\{(\w+)\}\}|\{(\w+)\}")


def load_templates(template_dir: Path = TEMPLATE_DIR) -> Mapping[str, str]:
    """读取全部模板，返回只读映射；缺少任一模板直接报错"""
    templates = {}
    for name in TEMPLATE_NAMES:
        path = template_dir / f"{name}.md"
        try:
            templates[name] = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise RuntimeError(f"读取提示词模板失败 ({name}): {e}") from e
    return MappingProxyType(templates)


@lru_cache(maxsize=1)
def default_templates() -> Mapping[str, str]:
    return load_templates()


def replace_variables(template: str, variables: Mapping[str, Optional[str]]) -> str:
    """
    替换模板变量，支持 {{name}} 和 {name} 两种写法
    未提供的变量原样保留；值为 None 时替换为空字符串
    """
    def _sub(match: re.Match) -> str:
        key = match.group(1) or match.group(2)
        if key not in variables:
            return match.group(0)
        value = variables[key]
        return "" if value is None else str(value)

    return _VAR_RE.sub(_sub, template)


def format_context(results: Sequence[SearchResult]) -> str:
    """检索结果 → "[n] 片段" 块，空行分隔"""
    return "\n\n".join(f"[{i + 1}] {r.text}" for i, r in enumerate(results))


def build_context_prompt(
    templates: Mapping[str, str],
    app_name: str,
    question: str,
    results: Sequence[SearchResult],
    history: str = "",
    user_template: Optional[str] = None,
) -> str:
    """有检索结果时的完整 prompt：系统提示词（含历史和参考内容） + 用户提示词"""
    context = format_context(results)
    if history:
        context = f"{history}以下是关于\"{app_name}\"的相关文档内容：\n\n{context}"
    system_prompt = replace_variables(
        templates[SYSTEM_PROMPT],
        {"appName": app_name, "context": context, "question": question},
    )
    raw_user = user_template or templates[USER_PROMPT]
    user_prompt = replace_variables(raw_user, {"appName": app_name}).strip() or DEFAULT_USER_PROMPT
    return f"{system_prompt}\n\n{user_prompt}"


def build_no_context_prompt(templates: Mapping[str, str], app_name: str, question: str) -> str:
    system_prompt = replace_variables(templates[NO_CONTEXT_SYSTEM_PROMPT], {"appName": app_name})
    user_prompt = replace_variables(templates[NO_CONTEXT_USER_PROMPT], {"question": question})
    return f"{system_prompt}\n\n{user_prompt}"
