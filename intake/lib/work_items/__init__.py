from intake.lib.work_items.codecs import (
    SCHEMA_VERSION,
    decode_work_item,
    encode_work_item,
    parse_csv_rows,
    split_target_id,
)

__all__ = ["SCHEMA_VERSION", "decode_work_item", "encode_work_item", "parse_csv_rows", "split_target_id"]
