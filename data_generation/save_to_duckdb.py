import duckdb
from pathlib import Path


TABLES = ("visits", "devices")


def save_to_duckdb(data_dir=None, db_path=None):
    """
    Bulk-load the synthetic CSVs into DuckDB tables `visits` and `devices`.

    Returns:
        {table: row_count}
    """
    project_root = Path(__file__).parent.parent
    data_dir = Path(data_dir) if data_dir else project_root / "data"
    db_path = Path(db_path) if db_path else data_dir / "synthetic_gps.duckdb"

    print(f"Converting to DuckDB...")
    print(f"Input:  {data_dir}")
    print(f"Output: {db_path}")

    con = duckdb.connect(str(db_path))
    counts = {}

    try:
        for table in TABLES:
            csv_path = data_dir / f"synthetic_{table}.csv"
            if not csv_path.exists():
                raise FileNotFoundError(f"{csv_path} not found; run data_generation/simulate_gps.py first")

            # Drop first so the script can be re-run
            con.execute(f"DROP TABLE IF EXISTS {table}")
            con.execute(f"""
                CREATE TABLE {table} AS
                SELECT * FROM read_csv_auto('{csv_path}')
            """)

            counts[table] = con.execute(f"SELECT count(*) FROM {table}").fetchone()[0]
            print(f"Saved {counts[table]} rows into '{table}' table.")

        print("\nSample visits:")
        print(con.execute("SELECT device_id, location_id, layer, timestamp, class_label FROM visits LIMIT 5").df())
    finally:
        con.close()

    return counts


if __name__ == "__main__":
    save_to_duckdb()
