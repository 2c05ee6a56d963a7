class FakeValidator:
    """Stands in for Gemini: records calls and replays a canned reply."""

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else {"verdict": "APPROVED", "explanation": "All rules met."}
        self.error = error
        self.calls = []

    async def validate(self, trade_details, rules, image=None):
        self.calls.append({"trade_details": trade_details, "rules": list(rules), "image": image})
        if self.error:
            raise self.error
        return self.response
