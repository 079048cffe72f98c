"""
FLASK API SERVER
----------------
Serves as the backend API for the web app.

Exposes endpoints that:
- Generate or retrieve cached kriged DPM surfaces (current, tier4, ratio)
- Serve surface PNG overlays and their EPSG:4326 footprint
- Serve point-of-interest layers joined with DPM values as GeoJSON
- Serve fitted variogram parameters and the rendered folium map

This file does not do analysis logic directly.
it orchestrates cached steps via dpm_krige/pipeline.py
"""

import json

from flask import Flask, jsonify, request, send_file
from flask_cors import CORS

from dpm_krige import config
from dpm_krige.pipeline import (
    SURFACE_NAMES,
    check_params,
    load_surfaces,
    run_exposure,
    run_map,
    run_surfaces,
    variogram_json_path,
)
from dpm_krige.render import surface_png, value_range, wgs84_corners
from dpm_krige.surfaces import read_geotiff, surface_stats

app = Flask(__name__)
CORS(app)


def _params_from_query():
    # default params for page load
    family = request.args.get("family", config.VARIOGRAM_FAMILY)
    try:
        cell = float(request.args.get("cell", config.CELL_SIZE))
        n_closest = int(request.args.get("n_closest", 0)) or None
    except ValueError:
        return None, (jsonify({"error": "cell and n_closest must be numeric"}), 400)
    try:
        check_params(family, cell, n_closest)
    except ValueError as e:
        return None, (jsonify({"error": str(e)}), 400)
    return (family, cell, n_closest), None


def _scenario_from_query():
    scenario = request.args.get("scenario", "current")
    if scenario not in SURFACE_NAMES:
        return None, (jsonify({"error": f"scenario must be one of {list(SURFACE_NAMES)}"}), 400)
    return scenario, None


@app.route("/api/health")
def health():
    return jsonify(status="ok")


@app.get("/api/surface_meta")
def api_surface_meta():
    params, err = _params_from_query()
    if err:
        return err
    scenario, err = _scenario_from_query()
    if err:
        return err
    family, cell, n_closest = params

    surface = read_geotiff(run_surfaces(family, cell, n_closest)[scenario], scenario)
    vmin, vmax = value_range(surface.values)
    q = f"scenario={scenario}&family={family}&cell={cell}&n_closest={n_closest or 0}"
    return jsonify({
        "scenario": scenario,
        "family": family, "cell": cell, "n_closest": n_closest,
        "url": f"/api/surface.png?{q}",
        "coordinates": wgs84_corners(surface.grid),
        "legend": {"vmin": vmin, "vmax": vmax},
        "stats": surface_stats(surface),
    })


@app.get("/api/surface.png")
def api_surface_png():
    params, err = _params_from_query()
    if err:
        return err
    scenario, err = _scenario_from_query()
    if err:
        return err

    try:
        max_dim = int(request.args.get("max", 1400))  # limit png size
    except ValueError:
        return jsonify({"error": "max must be an integer"}), 400
    if max_dim < 1:
        return jsonify({"error": "max must be >= 1"}), 400

    surface = load_surfaces(*params)[scenario]
    buf = surface_png(surface, max_dim=max_dim)
    return send_file(buf, mimetype="image/png")


@app.get("/api/exposure")
def api_exposure():
    params, err = _params_from_query()
    if err:
        return err
    layer = request.args.get("layer", "schools")
    if layer not in config.POINT_LAYERS:
        return jsonify({"error": f"layer must be one of {sorted(config.POINT_LAYERS)}"}), 400

    outputs = run_exposure(*params)
    if layer not in outputs:
        return jsonify({"error": f"layer {layer!r} has no input data"}), 404
    return jsonify(json.loads(outputs[layer].read_text(encoding="utf-8")))


@app.get("/api/variogram")
def api_variogram():
    params, err = _params_from_query()
    if err:
        return err
    scenario = request.args.get("scenario", "current")
    if scenario not in config.SCENARIOS:
        return jsonify({"error": f"scenario must be one of {list(config.SCENARIOS)}"}), 400

    run_surfaces(*params)
    payload = json.loads(variogram_json_path(*params).read_text(encoding="utf-8"))
    return jsonify({"scenario": scenario, **payload[scenario], "grid": payload["grid"]})


@app.get("/api/map")
def api_map():
    params, err = _params_from_query()
    if err:
        return err
    return send_file(run_map(*params), mimetype="text/html")


if __name__ == "__main__":
    app.run(debug=True)
