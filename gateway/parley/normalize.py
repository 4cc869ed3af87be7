START_OF_TEXT = "<|startoftext|>"
END_OF_TEXT = "<|endoftext|>"
DEFAULT_SEP_TOKEN = "</s>"


def normalize(raw_text: str, stop_sequences: list[str] | None = None, sep_token: str = DEFAULT_SEP_TOKEN) -> str:
    """Strip sentinel tokens and trailing stop sequences from generated text.

    Stops are checked in order against the text as already stripped by the
    previous stops, with the end-of-text marker checked last.
    """
    text = raw_text
    if text.startswith(START_OF_TEXT):
        text = text[len(START_OF_TEXT):]
    if sep_token and text.endswith(sep_token):
        text = text[: -len(sep_token)]
    text = text.rstrip()

    for stop in [*(stop_sequences or []), END_OF_TEXT]:
        if stop and text.endswith(stop):
            text = text[: -len(stop)].rstrip()
    return text
