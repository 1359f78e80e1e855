# Workers: separate processes that use DB as shared state.
# Run from backend/ with:
#   python -m workers.optimizer_worker
#   python -m workers.scanner_worker
