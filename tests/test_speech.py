from talkback.speech import SpeechOutput, SpeechStarted


def test_speak_and_finish(tts):
    output = SpeechOutput(tts)
    ended = []

    utterance = output.speak("Hello", "voice-1", on_end=ended.append)
    tts.listener(SpeechStarted(utterance))
    assert output.is_speaking(utterance)

    tts.finish()

    assert tts.spoken == [("Hello", "voice-1", utterance)]
    assert ended == [utterance]
    assert not output.is_speaking()


def test_new_utterance_supersedes_previous(tts):
    output = SpeechOutput(tts)
    ended, superseded = [], []

    first = output.speak("one", on_end=ended.append, on_superseded=superseded.append)
    second = output.speak("two", on_end=ended.append)

    assert tts.cancels == 1
    assert superseded == [first]
    assert output.current_utterance == second

    tts.finish(first)
    assert ended == []
    tts.finish(second)
    assert ended == [second]


def test_cancel_only_matching_utterance(tts):
    output = SpeechOutput(tts)
    utterance = output.speak("hello")

    assert not output.cancel("someone-else")
    assert output.is_speaking()
    assert output.cancel(utterance)
    assert tts.cancels == 1
    assert not output.cancel()


def test_failure_reported_once(tts):
    output = SpeechOutput(tts)
    errors, ended = [], []

    output.speak("hello", on_error=lambda uid, msg: errors.append(msg), on_end=ended.append)
    tts.fail("synthesis failed")
    tts.finish(tts.last_id)

    assert errors == ["synthesis failed"]
    assert ended == []


def test_caller_supplied_utterance_id(tts):
    output = SpeechOutput(tts)
    assert output.speak("hi", utterance_id="fixed") == "fixed"
    assert tts.last_id == "fixed"
