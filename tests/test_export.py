from talkback.export import conversation_to_markdown, export_filename
from talkback.models import Attachment, Conversation, Message


def test_conversation_to_markdown():
    conv = Conversation(
        id="c1",
        owner_id="alice",
        title="Moon facts",
        created_at=0.0,
        updated_at=0.0,
        messages=[
            Message(
                role="user", content="How far is the moon?", timestamp=0.0,
                attachments=(Attachment(filename="orbit.png"),),
            ),
            Message(role="assistant", content="About 384,400 km", timestamp=60.0, truncated=True),
        ],
    )

    md = conversation_to_markdown(conv)

    assert md.startswith("# Conversation: Moon facts")
    assert "## You (1970-01-01 00:00)" in md
    assert "## AI (1970-01-01 00:01)" in md
    assert "[File Attachments: orbit.png]" in md
    assert "About 384,400 km\n\n*[Response incomplete]*" in md
    assert md.count("---") == 2


def test_export_filename():
    assert export_filename("Hello, world!") == "Hello__world_.md"
    assert export_filename("Untitled") == "Untitled.md"
