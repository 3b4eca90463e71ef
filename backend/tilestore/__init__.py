"""Tileset hosting backend.

This package stores user-uploaded geodata as MBTiles tilesets and serves
their tiles over HTTP. Uploads are classified by content, normalized
(zipped shapefiles are extracted), and converted into one archive per
tileset in the background while clients poll the tileset record for
progress.

- Accepts MBTiles, GeoTIFF/VRT rasters and OGR vector formats
  (shapefile, GeoJSON, TopoJSON, KML, GPX, CSV)
- Keeps tileset records in PostgreSQL, or in memory for local runs
- Serves XYZ tiles straight from the archives with cache headers

See module sub-docstrings for details on architecture and usage.
"""
