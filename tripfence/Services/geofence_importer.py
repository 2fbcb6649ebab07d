# tripfence/Services/geofence_importer.py

"""
Servicio de importación de zonas de geocerca desde GeoJSON.

IMPORTANTE: Las coordenadas deben estar en EPSG:4326 ([lon, lat]).

Funcionalidad:
- Polygon / MultiPolygon features → 'polygon' zones ('rectangle' if the
  feature says so in properties.shape_type)
- Point features with properties.radius_meters → 'circle' zones
- Invalid rings are repaired with buffer(0) before storing
- Every feature is validated with GeofenceZoneCreate before it is written
- Duplicates handled by mode: 'skip' | 'update' | 'replace'
"""

import json
from typing import Optional, Tuple

from pydantic import ValidationError
from shapely.geometry import shape, mapping
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tripfence.Repositories.geofence import get_geofence_by_id, create_geofence, update_geofence
from tripfence.Schemas.geofence import GeofenceZoneCreate

ZONE_PROPERTIES = (
    'name', 'description', 'zone_type', 'priority', 'active_days',
    'effective_start_time', 'effective_end_time', 'speed_limit_kmh',
    'device_id', 'applies_to_all', 'is_active'
)


class GeofenceImporter:
    """
    Importador de zonas desde GeoJSON.
    """

    def __init__(self, registry=None):
        self.registry = registry

    def import_from_file(
        self,
        db: Session,
        filepath: str,
        mode: str = 'skip'
    ) -> Tuple[int, int, int, int]:
        """
        Importa zonas desde archivo GeoJSON local.

        Returns:
            Tupla (created, updated, skipped, failed)
        """
        print(f"[IMPORT] Loading geofences from: {filepath}")

        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                geojson_data = json.load(f)
        except FileNotFoundError:
            print(f"[IMPORT] File not found: {filepath}")
            return (0, 0, 0, 0)
        except json.JSONDecodeError as e:
            print(f"[IMPORT] Invalid JSON format: {e}")
            return (0, 0, 0, 0)

        return self.import_from_geojson_dict(db, geojson_data, mode=mode)

    def _feature_to_zone(self, feature: dict) -> Optional[GeofenceZoneCreate]:
        """
        Build a validated zone from one feature.

        Returns None for features without id or geometry (skipped).
        Raises ValueError / ValidationError for unusable geometry.
        """
        properties = feature.get('properties') or {}
        geometry_dict = feature.get('geometry')

        if not geometry_dict:
            return None

        zone_id = str(properties.get('id') or feature.get('id') or '').strip()
        if not zone_id:
            return None

        data = {k: properties[k] for k in ZONE_PROPERTIES if properties.get(k) is not None}
        data['id'] = zone_id
        data.setdefault('name', f'Geofence {zone_id}')
        data.setdefault('zone_type', properties.get('type', 'custom'))

        geom = shape(geometry_dict)
        if geom.geom_type == 'Point':
            data['shape_type'] = 'circle'
            data['center_lat'] = geom.y
            data['center_lon'] = geom.x
            data['radius_meters'] = properties.get('radius_meters') or properties.get('radius')
        elif geom.geom_type in ('Polygon', 'MultiPolygon'):
            if not geom.is_valid:
                geom = geom.buffer(0)
            data['shape_type'] = 'rectangle' if properties.get('shape_type') == 'rectangle' else 'polygon'
            data['boundary'] = mapping(geom)
        else:
            raise ValueError(f"unsupported geometry {geom.geom_type}")

        return GeofenceZoneCreate(**data)

    def import_from_geojson_dict(
        self,
        db: Session,
        geojson_dict: dict,
        mode: str = 'skip'
    ) -> Tuple[int, int, int, int]:
        """
        Importa zonas desde un diccionario GeoJSON (FeatureCollection).

        Args:
            db: Session SQLAlchemy
            geojson_dict: Diccionario con formato GeoJSON
            mode: 'skip' | 'update' | 'replace'

        Returns:
            (created, updated, skipped, failed)
        """
        created = 0
        updated = 0
        skipped = 0
        failed = 0

        if geojson_dict.get('type') != 'FeatureCollection':
            print("[IMPORT] Invalid GeoJSON: expected 'FeatureCollection'")
            return (0, 0, 0, 0)

        features = geojson_dict.get('features', [])
        print(f"[IMPORT] Loaded {len(features)} features")

        for feature in features:
            feature_id = (feature.get('properties') or {}).get('id') or feature.get('id') or 'unknown'
            try:
                try:
                    zone = self._feature_to_zone(feature)
                except (ValueError, ValidationError) as e:
                    print(f"[IMPORT] Invalid zone {feature_id}: {e}")
                    failed += 1
                    continue

                if zone is None:
                    print("[IMPORT] Skipping feature without id or geometry")
                    skipped += 1
                    continue

                zone_data = zone.model_dump()
                existing = get_geofence_by_id(db, zone.id)

                if existing:
                    if mode == 'skip':
                        skipped += 1
                        print(f"[IMPORT] Skipped (exists): {zone.id}")
                        continue

                    elif mode == 'update':
                        update_geofence(db, zone.id, zone_data)
                        updated += 1
                        print(f"[IMPORT] Updated: {zone.id}")

                    elif mode == 'replace':
                        db.delete(existing)
                        db.commit()
                        create_geofence(db, zone_data)
                        created += 1
                        print(f"[IMPORT] Replaced: {zone.id} ({zone.shape_type})")

                else:
                    create_geofence(db, zone_data)
                    created += 1
                    print(f"[IMPORT] Created {zone.shape_type}: {zone.id}")

            except IntegrityError as ie:
                db.rollback()
                failed += 1
                print(f"[IMPORT] IntegrityError for {feature_id}: {ie}")

            except SQLAlchemyError as e:
                db.rollback()
                failed += 1
                print(f"[IMPORT] Error importing {feature_id}: {e}")

        print(f"[IMPORT] Processed: {created} created, {updated} updated, "
              f"{skipped} skipped, {failed} failed")

        if self.registry is not None and (created or updated):
            self.registry.invalidate()

        return (created, updated, skipped, failed)


def import_zones_from_geojson(
    db: Session,
    geojson_dict: dict,
    mode: str = 'skip',
    registry=None
) -> Tuple[int, int, int, int]:
    """Bulk-load circle/polygon zones from a GeoJSON FeatureCollection."""
    return GeofenceImporter(registry=registry).import_from_geojson_dict(db, geojson_dict, mode=mode)
