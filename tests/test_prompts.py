import pytest

from rag_engine.models import SearchResult
from rag_engine.prompts import (
    DEFAULT_USER_PROMPT,
    NO_CONTEXT_SYSTEM_PROMPT,
    NO_CONTEXT_USER_PROMPT,
    SYSTEM_PROMPT,
    TEMPLATE_NAMES,
    USER_PROMPT,
    build_context_prompt,
    build_no_context_prompt,
    default_templates,
    format_context,
    replace_variables,
)

TEMPLATES = {
    SYSTEM_PROMPT: "你是{{appName}}助手。\n参考：\n{context}\n问题：{{question}}",
    USER_PROMPT: "请用{appName}的口吻回答。",
    NO_CONTEXT_SYSTEM_PROMPT: "{{appName}}知识库没有相关内容。",
    NO_CONTEXT_USER_PROMPT: "问题：{{question}}",
}


def _results(*texts):
    return [SearchResult(id=f"c{i}", text=t, score=0.9 - i * 0.1) for i, t in enumerate(texts)]


def test_replace_variables_supports_both_brace_styles():
    assert replace_variables("{{a}}-{a}-{b}", {"a": "x", "b": None}) == "x-x-"


def test_replace_variables_keeps_unknown_placeholders():
    assert replace_variables("{{known}} {unknown}", {"known": "ok"}) == "ok {unknown}"


def test_replace_variables_does_not_expand_inserted_values():
    assert replace_variables("{context}", {"context": "{question}", "question": "Q"}) == "{question}"


def test_default_templates_are_loaded_once_and_read_only():
    templates = default_templates()
    assert templates is default_templates()
    assert set(templates) == set(TEMPLATE_NAMES)
    assert all(templates[name] for name in TEMPLATE_NAMES)
    with pytest.raises(TypeError):
        templates[SYSTEM_PROMPT] = "changed"


def test_format_context_numbers_passages():
    assert format_context(_results("甲", "乙")) == "[1] 甲\n\n[2] 乙"


def test_context_prompt_without_history():
    prompt = build_context_prompt(TEMPLATES, "商城", "怎么退货", _results("七天无理由退货"))
    assert prompt == "你是商城助手。\n参考：\n[1] 七天无理由退货\n问题：怎么退货\n\n请用商城的口吻回答。"


def test_context_prompt_puts_history_before_passages():
    history = "你和用户之前的对话历史（仅供参考）：\n[用户] 你好\n[助手] 你好！\n\n"
    prompt = build_context_prompt(TEMPLATES, "商城", "怎么退货", _results("七天无理由退货"), history=history)

    assert history + '以下是关于"商城"的相关文档内容：\n\n[1] 七天无理由退货' in prompt
    assert prompt.index("[用户] 你好") < prompt.index("[1] 七天无理由退货")


def test_custom_user_template_overrides_default():
    prompt = build_context_prompt(TEMPLATES, "商城", "Q", _results("A"), user_template="只回答{{appName}}相关问题")
    assert prompt.endswith("\n\n只回答商城相关问题")


def test_empty_user_template_falls_back_to_boilerplate():
    templates = dict(TEMPLATES, **{USER_PROMPT: "   "})
    prompt = build_context_prompt(templates, "商城", "Q", _results("A"))
    assert prompt.endswith("\n\n" + DEFAULT_USER_PROMPT)


def test_no_context_prompt():
    assert build_no_context_prompt(TEMPLATES, "商城", "营业时间？") == "商城知识库没有相关内容。\n\n问题：营业时间？"
