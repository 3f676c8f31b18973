"""Archive diffing: checksum catalogs and delta archive builders."""
