"""
qchat :: Test Chat

Tests:
  - ReasoningFilter with markers split across increments, or opened by the prompt
  - ConversationState alternation + eviction
  - ChatTemplate rendering, discovery, special tokens
  - ChatSession history policy, answer reserve, context eviction, rollback on failure

Run:
    python -m pytest tests/test_chat.py -v

INL - 2025
"""

import json
import os
import sys
from contextlib import aclosing

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import ByteTokenizer, ScriptedModel, text_ids
from jinja2.exceptions import TemplateError

from qchat.core.chat_template import ChatTemplate, load_chat_template, special_tokens_from_config
from qchat.core.conversation import ConversationState, Role
from qchat.core.errors import ContextOverflow, InferenceError
from qchat.core.reasoning import ReasoningFilter, prompt_opens_reasoning
from qchat.core.sampling import InferenceConfig
from qchat.engine.chat import ChatSession
from qchat.engine.generation import StopReason, TextGeneration


def make_session(*replies, context_length=None, template=None, **kwargs):
    model = ScriptedModel(scripts=[text_ids(r) for r in replies] or ((),))
    config = InferenceConfig(temperature=0.0, repeat_penalty=1.0, max_tokens=200)
    generation = TextGeneration(model, ByteTokenizer(), config)
    session = ChatSession(
        generation, template or ChatTemplate.builtin("qwen3"), context_length=context_length, **kwargs,
    )
    return session, model


# Generation prompt already opens the reasoning segment (DeepSeek-R1 / QwQ style)
THINK_OPEN_TEMPLATE = (
    "{% for m in messages %}<{{ m.role }}>{{ m.content }}{% endfor %}"
    "{% if add_generation_prompt %}<assistant><think>\n{% endif %}"
)


def last_prompt(model) -> str:
    prefills = [ids for ids, pos in model.calls if pos == 0]
    return bytes(prefills[-1]).decode("utf-8")


def history(session):
    return [(t.role.value, t.content) for t in session.history.turns]


# =========================================================================
# ReasoningFilter
# =========================================================================

class TestReasoningFilter:
    def test_whole_segment(self):
        f = ReasoningFilter()
        assert f.feed("<think>plan</think>Hi") == "Hi"
        assert f.finish() == ""
        assert f.segments == ["plan"]
        assert f.visible_text == "Hi"

    def test_markers_split_per_character(self):
        f = ReasoningFilter()
        raw = "<think>step one\nstep two</think>\n\nHello there"
        out = "".join(f.feed(ch) for ch in raw) + f.finish()
        assert out == "Hello there"
        assert f.segments == ["step one\nstep two"]
        assert not f.in_reasoning

    def test_no_markers_passthrough(self):
        f = ReasoningFilter()
        assert f.feed("plain ") + f.feed("text") + f.finish() == "plain text"
        assert f.segments == []

    def test_partial_marker_released_at_end(self):
        f = ReasoningFilter()
        assert f.feed("a <thi") == "a "
        assert f.finish() == "<thi"
        assert f.visible_text == "a <thi"

    def test_look_alike_released(self):
        f = ReasoningFilter()
        assert f.feed("x <th") == "x "
        assert f.feed("ing>") == "<thing>"

    def test_unterminated_suppresses_rest(self):
        f = ReasoningFilter()
        assert f.feed("Sure. <think>still going") == "Sure. "
        assert f.in_reasoning
        assert f.finish() == ""
        assert f.unterminated
        assert f.segments == ["still going"]

    def test_multiple_segments(self):
        f = ReasoningFilter()
        out = f.feed("<think>a</think>x<think>b</think>y") + f.finish()
        assert out == "xy"
        assert f.segments == ["a", "b"]

    def test_feed_after_finish_ignored(self):
        f = ReasoningFilter()
        f.finish()
        assert f.feed("late") == ""

    def test_custom_markers(self):
        f = ReasoningFilter("[[", "]]")
        assert f.feed("[[hidden]]shown") + f.finish() == "shown"

    def test_empty_markers_rejected(self):
        with pytest.raises(ValueError):
            ReasoningFilter("", "</think>")

    def test_start_inside(self):
        f = ReasoningFilter(start_inside=True)
        raw = "secret plan</think>\n\nHello!"
        out = "".join(f.feed(ch) for ch in raw) + f.finish()
        assert out == "Hello!"
        assert f.segments == ["secret plan"]

    def test_start_inside_never_closed(self):
        f = ReasoningFilter(start_inside=True)
        assert f.feed("all reasoning") + f.finish() == ""
        assert f.unterminated

    @pytest.mark.parametrize("prompt, opened", [
        ("<assistant><think>\n", True),
        ("<assistant><think>", True),
        ("<assistant>\n", False),
        ("<think>a</think>\n<assistant>", False),
    ])
    def test_prompt_opens_reasoning(self, prompt, opened):
        assert prompt_opens_reasoning(prompt, "<think>") is opened


# =========================================================================
# ConversationState
# =========================================================================

class TestConversationState:
    def test_alternation(self):
        state = ConversationState()
        state.append(Role.SYSTEM, "be brief")
        state.append(Role.USER, "hi")
        state.append(Role.ASSISTANT, "hello")
        state.append("user", "again")
        assert [t.role for t in state.turns] == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.USER]

    @pytest.mark.parametrize("roles", [
        [Role.ASSISTANT],
        [Role.USER, Role.USER],
        [Role.USER, Role.ASSISTANT, Role.ASSISTANT],
        [Role.USER, Role.SYSTEM],
    ])
    def test_rejects(self, roles):
        state = ConversationState()
        for role in roles[:-1]:
            state.append(role, "x")
        with pytest.raises(ValueError):
            state.append(roles[-1], "x")

    def test_evict_oldest_exchange(self):
        state = ConversationState()
        state.append(Role.SYSTEM, "sys")
        state.append(Role.USER, "q1")
        state.append(Role.ASSISTANT, "a1")
        state.append(Role.USER, "q2")
        assert state.evict_oldest_exchange()
        assert [(t.role, t.content) for t in state.turns] == [(Role.SYSTEM, "sys"), (Role.USER, "q2")]
        # the pending user turn is never evicted
        assert not state.evict_oldest_exchange()
        assert len(state) == 2

    def test_clear(self):
        state = ConversationState()
        state.append(Role.SYSTEM, "sys")
        state.append(Role.USER, "q")
        state.clear()
        assert state.as_messages() == [{"role": "system", "content": "sys"}]
        state.clear(keep_system=False)
        assert state.as_messages() == []


# =========================================================================
# ChatTemplate
# =========================================================================

class TestChatTemplate:
    def test_qwen3_builtin(self):
        prompt = ChatTemplate.builtin("qwen3").apply([{"role": "user", "content": "hi"}])
        assert prompt == "<|im_start|>user\nhi<|im_end|>\n<|im_start|>assistant\n"

    def test_llama_builtin(self):
        prompt = ChatTemplate.builtin("llama").apply(
            [{"role": "user", "content": "hi"}], add_generation_prompt=False,
        )
        assert prompt == "<|begin_of_text|><|start_header_id|>user<|end_header_id|>\n\nhi<|eot_id|>"

    def test_unknown_builtin(self):
        with pytest.raises(ValueError):
            ChatTemplate.builtin("gpt2")

    def test_raise_exception_helper(self):
        template = ChatTemplate("{{ raise_exception('bad roles') }}")
        with pytest.raises(TemplateError):
            template.apply([])

    def test_extra_variables(self):
        template = ChatTemplate("{% if enable_thinking %}T{% else %}F{% endif %}")
        assert template.apply([], enable_thinking=False) == "F"

    def test_from_tokenizer_config(self, tmp_path):
        (tmp_path / "tokenizer_config.json").write_text(
            json.dumps({"chat_template": "{% for m in messages %}[{{ m.content }}]{% endfor %}"})
        )
        template = load_chat_template(str(tmp_path), "qwen3")
        assert template.apply([{"role": "user", "content": "x"}]) == "[x]"

    def test_named_template_list(self, tmp_path):
        (tmp_path / "tokenizer_config.json").write_text(json.dumps({
            "chat_template": [
                {"name": "tool_use", "template": "TOOLS"},
                {"name": "default", "template": "DEFAULT"},
            ],
        }))
        assert load_chat_template(str(tmp_path), "qwen3").apply([]) == "DEFAULT"

    def test_jinja_file_wins(self, tmp_path):
        (tmp_path / "chat_template.jinja").write_text("FILE")
        (tmp_path / "tokenizer_config.json").write_text(json.dumps({"chat_template": "CONFIG"}))
        assert load_chat_template(str(tmp_path), "qwen3").apply([]) == "FILE"

    def test_builtin_fallback(self, tmp_path):
        template = load_chat_template(str(tmp_path), "llama")
        assert template.source == ChatTemplate.builtin("llama").source

    def test_special_tokens_from_tokenizer_config(self, tmp_path):
        (tmp_path / "tokenizer_config.json").write_text(json.dumps({
            "bos_token": "<s>",
            "eos_token": {"content": "</s>", "lstrip": False},
            "chat_template": "{{ bos_token }}{% for m in messages %}{{ m.content }}{{ eos_token }}{% endfor %}",
        }))
        template = load_chat_template(str(tmp_path), "qwen3")
        assert template.apply([{"role": "user", "content": "x"}]) == "<s>x</s>"

    def test_builtin_uses_config_bos(self, tmp_path):
        (tmp_path / "tokenizer_config.json").write_text(json.dumps({"bos_token": "<BOS>"}))
        prompt = load_chat_template(str(tmp_path), "llama").apply([{"role": "user", "content": "hi"}])
        assert prompt.startswith("<BOS><|start_header_id|>user")

    def test_variables_override_special_tokens(self):
        template = ChatTemplate("[{{ bos_token }}]", {"bos_token": "<s>"})
        assert template.apply([]) == "[<s>]"
        assert template.apply([], bos_token="") == "[]"

    def test_special_tokens_from_config(self):
        config = {"bos_token": None, "unk_token": {"content": "<unk>"}, "pad_token": 3}
        assert special_tokens_from_config(config) == {"unk_token": "<unk>"}


# =========================================================================
# ChatSession
# =========================================================================

class TestChatSession:
    @pytest.mark.asyncio
    async def test_single_exchange(self):
        session, model = make_session("Hello!")
        assert await session.ask("hi") == "Hello!"
        assert history(session) == [("user", "hi"), ("assistant", "Hello!")]
        assert last_prompt(model) == "<|im_start|>user\nhi<|im_end|>\n<|im_start|>assistant\n"

    @pytest.mark.asyncio
    async def test_system_prompt_rendered(self):
        session, model = make_session("ok", system_prompt="be brief")
        await session.ask("hi")
        assert last_prompt(model).startswith("<|im_start|>system\nbe brief<|im_end|>\n")

    @pytest.mark.asyncio
    async def test_second_turn_sees_first(self):
        session, model = make_session("one", "two")
        await session.ask("first")
        assert await session.ask("second") == "two"
        prompt = last_prompt(model)
        assert "<|im_start|>user\nfirst<|im_end|>\n<|im_start|>assistant\none<|im_end|>\n" in prompt
        assert prompt.endswith("<|im_start|>user\nsecond<|im_end|>\n<|im_start|>assistant\n")
        assert len(session.history) == 4

    @pytest.mark.asyncio
    async def test_reasoning_dropped_from_history(self):
        session, model = make_session("<think>short plan</think>\n\nHello", "fine")
        assert await session.ask("hi") == "Hello"
        assert session.last_reasoning == ["short plan"]
        assert history(session)[-1] == ("assistant", "Hello")
        await session.ask("again")
        assert "short plan" not in last_prompt(model)

    @pytest.mark.asyncio
    async def test_keep_reasoning(self):
        raw = "<think>short plan</think>\n\nHello"
        session, _ = make_session(raw, keep_reasoning=True)
        assert await session.ask("hi") == "Hello"
        assert history(session)[-1] == ("assistant", raw)

    @pytest.mark.asyncio
    async def test_reasoning_opened_by_template(self):
        session, model = make_session(
            "secret plan</think>\n\nHello!", "</think>fine", template=ChatTemplate(THINK_OPEN_TEMPLATE),
        )
        answer = await session.ask("hi")
        assert answer == "Hello!"
        assert session.last_reasoning == ["secret plan"]
        assert history(session)[-1] == ("assistant", "Hello!")
        await session.ask("again")
        assert "secret plan" not in last_prompt(model)

    @pytest.mark.asyncio
    async def test_reasoning_opened_by_template_kept(self):
        session, _ = make_session(
            "secret plan</think>\n\nHello!", template=ChatTemplate(THINK_OPEN_TEMPLATE), keep_reasoning=True,
        )
        assert await session.ask("hi") == "Hello!"
        assert history(session)[-1] == ("assistant", "<think>secret plan</think>\n\nHello!")

    @pytest.mark.asyncio
    async def test_reset_keeps_system(self):
        session, _ = make_session("ok", system_prompt="sys")
        await session.ask("hi")
        session.reset()
        assert history(session) == [("system", "sys")]
        assert session.last_reasoning == []

    @pytest.mark.asyncio
    async def test_evicts_oldest_exchange(self):
        # first prompt renders to 100 tokens, the full second one to 213;
        # 113 are left after the default answer reserve of 150 // 4
        session, model = make_session("ok", "fine", context_length=150)
        await session.ask("a" * 50)
        assert await session.ask("b" * 50) == "fine"
        assert history(session) == [("user", "b" * 50), ("assistant", "fine")]
        assert "a" * 50 not in last_prompt(model)

    @pytest.mark.asyncio
    async def test_context_overflow_leaves_history(self):
        session, model = make_session("ok", context_length=20)
        with pytest.raises(ContextOverflow) as exc:
            await session.ask("this message is far too long")
        assert exc.value.context_length == 20
        assert history(session) == []
        assert model.calls == []

    def test_default_answer_reserve(self):
        assert make_session(context_length=400)[0].reserve_tokens == 100
        assert make_session()[0].reserve_tokens == 200

    @pytest.mark.asyncio
    async def test_prompt_must_leave_answer_reserve(self):
        # "hi" renders to 52 tokens with the qwen3 template
        session, model = make_session("ok", context_length=60, reserve_tokens=10)
        with pytest.raises(ContextOverflow) as exc:
            await session.ask("hi")
        assert "reserving 10" in str(exc.value)
        assert model.calls == []

        session, _ = make_session("ok", context_length=60, reserve_tokens=8)
        assert await session.ask("hi") == "ok"

    @pytest.mark.asyncio
    async def test_failure_restores_evicted_history(self):
        session, model = make_session("ok", "fine", context_length=150)
        await session.ask("a" * 50)
        before = history(session)
        model.fail_at = 1
        with pytest.raises(InferenceError):
            await session.ask("b" * 50)
        assert history(session) == before

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_answer(self):
        session, _ = make_session("abcdef")
        stream = session.chat("hi")
        pieces = []
        async for piece in stream:
            pieces.append(piece)
            stream.cancel()
        assert pieces == ["a"]
        assert stream.stop_reason == StopReason.CANCELLED
        assert history(session) == [("user", "hi"), ("assistant", "a")]

    @pytest.mark.asyncio
    async def test_abandoned_stream_rolls_back(self):
        session, _ = make_session("abcdef", "ok")
        stream = session.chat("hi")
        async with aclosing(stream):
            async for _ in stream:
                break
        assert history(session) == []
        assert await session.ask("hi") == "ok"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
