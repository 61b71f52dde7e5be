import asyncio
from datetime import datetime, timedelta, timezone

from smolbot.channel_cache import ChannelConversationCache
from smolbot.context_builder import CURRENT_HEADER, UNAVAILABLE_REPLY, ContextAssembler
from smolbot.models import CachedMessage, ImageAnnotation, RawMessage

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
BOT_ID = "999"


def msg(mid, second, author="1", name="alice", content=None, ref=None, is_bot=False, images=()):
    return CachedMessage(
        id=mid,
        content=content if content is not None else f"text {mid}",
        author_id=author,
        author_name=name,
        timestamp=T0 + timedelta(seconds=second),
        images=tuple(images),
        referenced_message_id=ref,
        author_is_bot=is_bot,
    )


class FakeSource:
    def __init__(self, messages=None):
        self.messages = messages or {}
        self.fetches = []
    async def fetch_recent(self, channel_id, limit):
        return []
    async def fetch_one(self, channel_id, message_id):
        self.fetches.append(message_id)
        if message_id not in self.messages:
            raise LookupError("Unknown Message")
        return self.messages[message_id]


def make(source=None, annotate=None):
    cache = ChannelConversationCache(max_size=20, persist_on_append=False)
    return cache, ContextAssembler(cache, source, assistant_id=BOT_ID, assistant_label="SmolBot", annotate=annotate)


def build(assembler, snapshot, current=None, **kw):
    return asyncio.run(assembler.build("c1", snapshot, current, **kw))


def test_empty_inputs_give_empty_transcript():
    _, asm = make()
    t = build(asm, [])
    assert len(t) == 0
    assert t.render() == ""


def test_current_with_empty_cache_is_single_entry():
    _, asm = make()
    t = build(asm, None, msg("m1", 0))
    assert t.message_ids == ["m1"]
    assert t.entries[0].is_current


def test_entries_sorted_by_timestamp():
    _, asm = make()
    snap = [msg("late", 30), msg("early", 10), msg("mid", 20)]
    t = build(asm, snap)
    assert t.message_ids == ["early", "mid", "late"]
    rendered = t.render()
    assert rendered.index("text early") < rendered.index("text mid") < rendered.index("text late")


def test_equal_timestamps_keep_insertion_order():
    _, asm = make()
    t = build(asm, [msg("b", 5), msg("a", 5)])
    assert t.message_ids == ["b", "a"]


def test_window_keeps_most_recent():
    _, asm = make()
    snap = [msg(f"m{i}", i) for i in range(10)]
    t = build(asm, snap, window_size=3)
    assert t.message_ids == ["m7", "m8", "m9"]


def test_current_message_is_moved_to_the_end():
    _, asm = make()
    current = msg("now", 1, content="hey bot")
    snap = [current, msg("after", 5)]
    t = build(asm, snap, current)
    assert t.message_ids == ["after", "now"]
    rendered = t.render()
    assert f"\n{CURRENT_HEADER}\n\n[User] <@1> (alice): >>> hey bot" in rendered


def test_exclude_current_leaves_it_out():
    _, asm = make()
    current = msg("now", 9)
    t = build(asm, [msg("a", 1), current], current, exclude_current=True)
    assert t.message_ids == ["a"]
    assert CURRENT_HEADER not in t.render()


def test_provenance_labels_and_images():
    _, asm = make()
    snap = [
        msg("u", 1, content="hi"),
        msg("s", 2, author=BOT_ID, name="SmolBot", content="hello"),
        msg("b", 3, author="7", name="otherbot", content="beep", is_bot=True,
            images=[ImageAnnotation(url="https://x/y.png", light_description="a robot")]),
    ]
    t = build(asm, snap)
    assert [e.provenance for e in t.entries] == ["participant", "self", "automated"]
    lines = t.render().split("\n\n")
    assert lines[0] == "[User] <@1> (alice): hi"
    assert lines[1] == f"[SmolBot] <@{BOT_ID}> (SmolBot): hello"
    assert lines[2] == "[Bot] <@7> (otherbot): beep\n[Image: a robot]"


def test_reply_resolved_from_cache():
    cache, asm = make()
    target = msg("t", 0, author="2", name="bob", content="original")
    cache.append("other-channel", target)
    reply = msg("r", 1, content="agreed", ref="t")
    t = build(asm, [reply])
    assert t.entries[0].text == "[User] <@1> (alice): [Replying to <@2> (bob): original]: agreed"


def test_reply_to_current_message_uses_current():
    source = FakeSource()
    _, asm = make(source)
    current = msg("cur", 5, content="question")
    earlier = msg("e", 1, content="answer", ref="cur")
    t = build(asm, [earlier], current)
    assert "[Replying to <@1> (alice): question]: answer" in t.entries[0].text
    assert source.fetches == []


def test_unresolvable_reply_renders_sentinel():
    source = FakeSource()
    _, asm = make(source)
    t = build(asm, [msg("r", 1, content="what?", ref="gone")])
    assert t.entries[0].text.endswith(f"{UNAVAILABLE_REPLY}: what?")
    assert t.entries[0].reply_unavailable
    assert source.fetches == ["gone"]


def test_reply_without_source_renders_sentinel():
    _, asm = make(None)
    t = build(asm, [msg("r", 1, content="huh", ref="gone")])
    assert UNAVAILABLE_REPLY in t.render()


def test_fetched_reply_is_annotated_and_cached():
    raw = RawMessage(
        id="old",
        channel_id="c1",
        content="see pic",
        author_id="3",
        author_name="carol",
        created_at=T0 - timedelta(days=1),
        image_urls=("https://x/p.png",),
    )
    source = FakeSource({"old": raw})

    async def annotate(r):
        return [ImageAnnotation(url=u, light_description="a sunset") for u in r.image_urls]

    cache, asm = make(source, annotate)
    t = build(asm, [msg("r1", 1, content="nice", ref="old"), msg("r2", 2, content="wow", ref="old")])
    assert "[Replying to <@3> (carol): see pic\n[Image: a sunset]]: nice" in t.entries[0].text
    # fetched once, then served from the per-build memo
    assert source.fetches == ["old"]
    assert cache.find_by_id("old", "c1").images[0].light_description == "a sunset"
