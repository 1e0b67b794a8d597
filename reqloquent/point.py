from __future__ import annotations
from .errors import tert, vert
from math import asin, cos, radians, sin, sqrt


EARTH_RADIUS = 6371008.8


class Point:
    """Spatial point in (longitude, latitude) order, stored in the
        document store as a GEOMETRY pseudo-type.
    """
    longitude: float
    latitude: float

    def __init__(self, longitude: int|float, latitude: int|float) -> None:
        tert(type(longitude) in (int, float) and type(latitude) in (int, float),
            'longitude and latitude must be int|float')
        vert(-180 <= longitude <= 180, 'longitude must be between -180 and 180')
        vert(-90 <= latitude <= 90, 'latitude must be between -90 and 90')
        self.longitude = float(longitude)
        self.latitude = float(latitude)

    @classmethod
    def parse(cls, value: Point|list|tuple|dict) -> Point:
        """Parse a Point from a Point, an [x, y] pair, a GeoJSON Point,
            or a GEOMETRY pseudo-type. Raises TypeError for anything
            else.
        """
        if isinstance(value, Point):
            return value

        if type(value) in (list, tuple):
            tert(len(value) == 2, 'point must have exactly two coordinates')
            return cls(*value)

        tert(isinstance(value, dict), 'point must be Point|list|tuple|dict')
        tert(value.get('type') == 'Point' and 'coordinates' in value,
            'dict must be a GeoJSON Point')
        return cls(*value['coordinates'])

    def to_geojson(self) -> dict:
        return {'type': 'Point', 'coordinates': [self.longitude, self.latitude]}

    def to_reql(self) -> dict:
        """Return the GEOMETRY pseudo-type representation."""
        return {'$reql_type$': 'GEOMETRY', **self.to_geojson()}

    def distance(self, other: Point) -> float:
        """Great-circle distance to the other point in meters."""
        tert(isinstance(other, Point), 'other must be a Point')
        lon1, lat1, lon2, lat2 = map(
            radians, (self.longitude, self.latitude, other.longitude, other.latitude)
        )
        a = sin((lat2 - lat1)/2)**2 + cos(lat1) * cos(lat2) * sin((lon2 - lon1)/2)**2
        return 2 * EARTH_RADIUS * asin(sqrt(a))

    def __iter__(self):
        yield self.longitude
        yield self.latitude

    def __eq__(self, other) -> bool:
        if not isinstance(other, Point):
            return False
        return (self.longitude, self.latitude) == (other.longitude, other.latitude)

    def __hash__(self) -> int:
        return hash((self.longitude, self.latitude))

    def __repr__(self) -> str:
        return f'Point({self.longitude}, {self.latitude})'
