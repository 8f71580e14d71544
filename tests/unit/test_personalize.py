from nurture.personalize import looks_like_html, personalize, plain_text_to_html, truncate_text
from nurture.persistence.models import Contact, ContactState


def _contact(**state):
    contact = Contact(
        workflow_id="wf",
        user_id="u",
        email="ada@analytical.io",
        full_name="Ada King Lovelace",
    )
    return contact, ContactState(**state)


def test_personalize_replaces_known_tokens():
    contact, state = _contact(company="Analytical Engines", job_title="Countess")
    text = "Hi {first_name} {last_name}, how is {company}? - {sender_name} <{sender_email}>"
    rendered = personalize(text, contact, state, "Olive", "olive@example.com")
    assert rendered == "Hi Ada King Lovelace, how is Analytical Engines? - Olive <olive@example.com>"


def test_personalize_tokens_are_case_and_whitespace_insensitive():
    contact, state = _contact()
    assert personalize("{ FIRST_NAME }|{Email}", contact, state) == "Ada|ada@analytical.io"


def test_unknown_tokens_render_empty():
    contact, state = _contact()
    assert personalize("Hello {favourite_colour}!", contact, state) == "Hello !"


def test_name_falls_back_to_email():
    contact = Contact(workflow_id="wf", user_id="u", email="bob@example.com")
    assert personalize("{name}/{first_name}", contact, ContactState()) == "bob@example.com/bob@example.com"


def test_plain_text_to_html_escapes_and_wraps_paragraphs():
    html = plain_text_to_html("Hi <you>\nline two\n\nSecond & last")
    assert html == "<p>Hi &lt;you&gt;<br />line two</p><p>Second &amp; last</p>"
    assert plain_text_to_html("   ") == ""


def test_looks_like_html():
    assert looks_like_html("<p>Hello</p>")
    assert looks_like_html('<a href="x">x</a>')
    assert not looks_like_html("2 < 3 and 5 > 4")


def test_truncate_text():
    assert truncate_text("abc", 5) == "abc"
    assert truncate_text("abcdef", 3) == "abc"
    assert truncate_text("a" * 30, 20) == "a" * 6 + "...(truncated)"


def test_truncate_text_never_exceeds_limit():
    preview = truncate_text("x" * 5000)
    assert len(preview) == 2000
    assert preview.endswith("...(truncated)")
