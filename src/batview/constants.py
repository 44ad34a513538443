FFT_SIZE = 2048
HOP_SIZE = 512
CHUNK_FRAMES = 32
TILE_FRAMES = 256

# 1025 bins × float32 + time offset (8) + list overhead (~24)
BYTES_PER_FRAME = (FFT_SIZE // 2 + 1) * 4 + 8 + 24
COLUMN_BUDGET_BYTES = 200 * 1024 * 1024
TILE_BUDGET_BYTES = 120 * 1024 * 1024

# これを超えるファイルは Column Store を保持したまま、Spectrogram を組み立てない。
LARGE_FILE_FRAMES = 50_000

PREVIEW_FFT_SIZE = 256
PREVIEW_WIDTH = 256
PREVIEW_HEIGHT = 128

DEFAULT_KEEP_RADIUS_TILES = 8
VISIBLE_SCHEDULE_LIMIT = 20
