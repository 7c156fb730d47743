"""Fan one live source out into delayed HLS copies and keep their playback in sync."""
