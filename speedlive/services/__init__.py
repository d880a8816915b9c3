# Service layer for the speedlive webserver
# - speedtest_runner: resolve, spawn, stream and reap the Ookla speedtest CLI
# - relay:            turn its JSONL output into start/progress/final/error/aborted events
