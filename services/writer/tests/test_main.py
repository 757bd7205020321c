import io
import json
from unittest.mock import MagicMock

from conftest import make_batch
from main import run

from app.registry import WriterRegistry


def _line(batch, rates) -> str:
    return json.dumps({"batch": batch.model_dump(mode="json"), "rates": rates})


def test_run_writes_every_valid_line():
    registry = MagicMock(spec=WriterRegistry)
    registry.write.return_value = True
    stream = io.StringIO(
        "\n".join(
            [
                _line(make_batch("rx", "tx"), [1.0, 2.0]),
                "",
                _line(make_batch("value"), [None]),
            ]
        )
    )

    assert run(registry, stream) == 0
    assert registry.write.call_count == 2
    batch, rates = registry.write.call_args.args
    assert batch.sources[0].name == "value"
    assert rates == [None]


def test_run_counts_bad_lines_and_failed_writes():
    registry = MagicMock(spec=WriterRegistry)
    registry.write.side_effect = [False]
    stream = io.StringIO(
        "\n".join(
            [
                "not json",
                _line(make_batch("rx", "tx"), [1.0]),  # rate count mismatch
                _line(make_batch("value"), [1.0]),
            ]
        )
    )

    assert run(registry, stream) == 3
    registry.write.assert_called_once()
