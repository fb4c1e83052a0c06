import json
import logging
import pandas as pd
from pathlib import Path


# Load a file based on its file type (json, csv, tsv, parquet, xlsx)
def load_file(file_path):
    """Load a file by extension into a Python object.

    Args:
        file_path: Path to the file.

    Returns:
        Loaded object: dict for JSON, DataFrame for
        CSV/TSV/Parquet/XLSX, or None for unsupported types.

    Raises:
        Exception: If reading the file fails.
    """
    try:
        file_extension = Path(file_path).suffix.lower()

        if file_extension == ".json":
            with open(file_path, 'r') as f:
                return json.load(f)

        elif file_extension == ".csv":
            # keep blanks as "" so declared blank sentinels can be told apart from absent cells
            return pd.read_csv(file_path, keep_default_na=False, na_values=["NA", "nan", "NaN"])

        elif file_extension == ".tsv":
            return pd.read_csv(file_path, delimiter='\t', keep_default_na=False, na_values=["NA", "nan", "NaN"])

        elif file_extension == ".parquet":
            return pd.read_parquet(file_path, engine="pyarrow")

        elif file_extension == ".xlsx":
            return pd.read_excel(file_path)

        else:
            logging.warning(f"Unsupported file type {file_extension} for {file_path}")
            return None

    except Exception as e:
        logging.error(f"Error loading file {file_path}: {e}")
        raise


def write_file(df: pd.DataFrame, file_path) -> Path:
    """Write a DataFrame by extension (csv, tsv, parquet).

    Args:
        df: Table to write.
        file_path: Destination; parent folders are created.

    Returns:
        The destination path.

    Raises:
        ValueError: If the extension is not supported.
    """
    path = Path(file_path)
    file_extension = path.suffix.lower()
    path.parent.mkdir(parents=True, exist_ok=True)

    if file_extension == ".csv":
        df.to_csv(path, index=False)
    elif file_extension == ".tsv":
        df.to_csv(path, sep='\t', index=False)
    elif file_extension == ".parquet":
        out = df.copy()
        # categorical codes don't round-trip through every parquet reader
        for c in out.select_dtypes(include="category").columns:
            out[c] = out[c].astype(str)
        out.to_parquet(path, engine="pyarrow", index=False)
    else:
        raise ValueError(f"Unsupported output file type {file_extension} for {file_path}")
    return path
