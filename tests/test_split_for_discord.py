from smolbot.utils.text_split import CONT_MARKER, LEAD_MARKER, split_for_discord


def test_split_for_discord_single_chunk():
    long = 'a' * 100
    parts = split_for_discord(long)
    assert parts == [long]


def test_split_for_discord_multi_chunk():
    text = ' '.join(['word'] * 200)
    parts = split_for_discord(text, limit=50, max_parts=3)
    assert len(parts) == 3
    assert all(len(p) <= 50 for p in parts)
    assert parts[0].endswith(CONT_MARKER)
    assert parts[1].startswith(LEAD_MARKER)


def test_split_for_discord_fits_in_two():
    text = ' '.join(['word'] * 15)  # 74 chars
    parts = split_for_discord(text, limit=50, max_parts=2)
    assert len(parts) == 2
    assert parts[0].endswith(CONT_MARKER)
    rebuilt = parts[0][:-len(CONT_MARKER)] + ' ' + parts[1][len(LEAD_MARKER):]
    assert rebuilt == text


def test_split_for_discord_hard_cut_without_spaces():
    parts = split_for_discord('x' * 120, limit=50, max_parts=2)
    assert len(parts) == 2
    assert len(parts[0]) <= 50 and len(parts[1]) <= 50
