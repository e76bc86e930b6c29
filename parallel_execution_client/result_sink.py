from typing import List, TextIO

from parallel_execution_client.models import Outcome


class LineDelimitedJsonSink:
    """Writes each Outcome as one JSON document per line, flushing as it goes"""

    def __init__(self, stream: TextIO):
        self.stream = stream
        self.failures: List[Outcome] = []
        self.written = 0

    def write(self, outcome: Outcome) -> None:
        self.stream.write(outcome.model_dump_json())
        self.stream.write("\n")
        self.stream.flush()
        self.written += 1
        if outcome.failed:
            self.failures.append(outcome)
