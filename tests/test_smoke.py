from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def test_config_templates_exist():
    assert (ROOT / 'config.example.yaml').exists(), 'config.example.yaml should be in repo'
    assert (ROOT / '.env.example').exists(), '.env.example should be in repo'
    assert (ROOT / 'personas' / 'default' / 'system.txt').exists()


def test_import_core_modules():
    # Basic imports should succeed
    import smolbot.bot_app  # noqa: F401
    import smolbot.cogs.admin  # noqa: F401
    import smolbot.http_app  # noqa: F401
    import smolbot.message_handler  # noqa: F401


def test_prompt_engine_handles_missing_files(tmp_path):
    from smolbot.models import CachedMessage
    from smolbot.persona_service import PersonaService
    from smolbot.prompt_template_engine import PromptTemplateEngine

    p = PersonaService(path=str(tmp_path / 'no-persona.md'))
    engine = PromptTemplateEngine(str(tmp_path / 'no-system.txt'), p, assistant_id='42', assistant_label='Smol')
    sm = engine.build_system_message()
    assert 'Smol (<@42>)' in sm
    assert '[Persona]' not in sm

    current = CachedMessage(id='m', content='hi', author_id='1', author_name='al',
                            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc))
    msgs = engine.reply_prompt('', current, image_context='a cat')
    assert [m['role'] for m in msgs] == ['system', 'system', 'system']
    assert '(no earlier messages)' in msgs[1]['content']
    assert 'Image Context: a cat' in msgs[2]['content']
    assert 'has directly mentioned you' in msgs[2]['content']


def test_persona_front_matter_and_reload(tmp_path):
    import os
    from smolbot.persona_service import PersonaService

    path = tmp_path / 'persona.md'
    path.write_text('---\nname: Smol\n---\nBe nice.\n', encoding='utf-8')
    p = PersonaService(str(path))
    assert p.meta() == {'name': 'Smol'}
    assert p.body() == 'Be nice.'
    path.write_text('Be terse.', encoding='utf-8')
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
    assert p.body() == 'Be terse.'
