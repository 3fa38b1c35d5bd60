# obligation_tracker/outputs/csv_output.py

import os
import csv
import logging
from decimal import Decimal
from obligation_tracker.outputs.base import BaseOutput

logger = logging.getLogger(__name__)


class CSVOutput(BaseOutput):
    """
    Writes a period's occurrences to Schedule<start>_<end>.csv, sorted by date,
    with signed amounts (income positive).
    """
    def __init__(self, config):
        self.config     = config
        self.output_dir = config.get('output_dir', 'data')
        os.makedirs(self.output_dir, exist_ok=True)

    def write(self, occurrences, period_start, period_end):
        filename = f"Schedule{period_start.isoformat()}_{period_end.isoformat()}.csv"
        out_path = os.path.join(self.output_dir, filename)

        rows = sorted(occurrences, key=lambda o: (o.date, o.obligation_id or 0))
        with open(out_path, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(['date', 'obligation_id', 'name', 'classification', 'amount'])
            for occ in rows:
                amount = Decimal(occ.amount) * occ.classification.sign
                writer.writerow([
                    occ.date.isoformat(),
                    occ.obligation_id if occ.obligation_id is not None else '',
                    str(occ.name).strip(),
                    occ.classification.value,
                    f"{amount:.2f}",
                ])

        logger.info("Written %d occurrences to %s", len(rows), out_path)
        return out_path
