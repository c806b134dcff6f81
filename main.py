"""
Chunked Elastic Wave Simulator - Main Application
Command-line entry point: builds parameters, loads or synthesizes material
volumes, runs the simulation headless and saves the results
"""
import sys
import argparse
import logging
import threading
from pathlib import Path
from typing import Optional, Dict, Any

import numpy as np

from logging_config import setup_logging
from simulation_config import SimulationParameters, Axis, Wavelet
from wave_simulator import ChunkedWaveSimulator
from simulation_results import SimulationResults, WaveFieldUpdate

logger = logging.getLogger(__name__)


class WaveSimulatorApp:
    """Main application orchestrator"""

    def __init__(self, params: SimulationParameters, volume_paths: Optional[Dict[str, str]] = None):
        self.params = params
        self.volume_paths = volume_paths or {}
        self.volumes: Dict[str, Optional[np.ndarray]] = {}
        self.simulator = ChunkedWaveSimulator(params)
        self.cancel_event = threading.Event()
        self.results: Optional[SimulationResults] = None
        self._error: Optional[BaseException] = None

        print("=" * 70)
        print("CHUNKED ELASTIC WAVE SIMULATOR")
        print("Stress-Velocity FDTD with Adaptive Memory Management")
        print("=" * 70)
        print()

    def initialize(self):
        """Load material volumes and report the execution plan"""
        print("Initializing simulation components...")
        p = self.params

        print("  ✓ Loading material volumes...")
        self.volumes = self._load_volumes()

        plan = self.simulator.plan_execution()
        print()
        print("Initialization complete!")
        print(f"  • Grid: {p.width} x {p.height} x {p.depth} voxels ({p.pixel_size * 1e3:.3f} mm)")
        print(f"  • Memory path: {plan.strategy.name.lower()} "
              f"({plan.estimated_bytes / 1024 ** 2:.1f} MB field, "
              f"{plan.memory_budget_bytes / 1024 ** 2:.1f} MB budget)")
        print(f"  • Chunks: {plan.chunk_count} x {plan.chunk_depth} slices, "
              f"offloading {'on' if plan.enable_offloading else 'off'}")
        print(f"  • Transmitter voxel: {p.tx_voxel}, receiver voxel: {p.rx_voxel}")
        print(f"  • Physics: elastic"
              f"{' + plastic' if p.use_plastic_model else ''}"
              f"{' + brittle' if p.use_brittle_model else ''}")
        print()

    def _load_volumes(self) -> Dict[str, Optional[np.ndarray]]:
        """Load .npy volumes, or synthesize a homogeneous sample"""
        volumes: Dict[str, Optional[np.ndarray]] = {
            'labels': None, 'density': None, 'youngs_modulus': None, 'poisson_ratio': None
        }
        for name, path in self.volume_paths.items():
            if path:
                print(f"    Loading {name}: {path}")
                volumes[name] = np.load(path, mmap_mode='r')

        if volumes['labels'] is None:
            print(f"    Creating homogeneous sample: {self.params.volume_shape}")
            volumes['labels'] = np.ones(self.params.volume_shape, dtype=np.uint8)
        if volumes['density'] is None:
            volumes['density'] = np.full(self.params.volume_shape, self.params.density_kg_m3,
                                         dtype=np.float32)
        return volumes

    def _on_progress(self, fraction: float, step: int, message: str):
        print(f"  Progress: {fraction * 100:5.1f}% - {message} "
              f"[{self.simulator.current_memory_usage_mb:.1f} MB resident]")

    def _worker(self, wavefield_callback):
        try:
            self.results = self.simulator.run(
                progress_callback=self._on_progress,
                wavefield_callback=wavefield_callback,
                cancel_event=self.cancel_event,
                **self.volumes
            )
        except BaseException as e:
            self._error = e

    def run_batch_simulation(self, output_dir: str = "./output", live_every: int = 0):
        """Run headless; Ctrl+C cancels and keeps partial results"""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        print("Running batch simulation (headless mode)...")
        print(f"Simulating {self.params.total_time_steps} time steps...")

        wavefield_callback = None
        if live_every > 0:
            def wavefield_callback(update: WaveFieldUpdate):
                if update.time_step % live_every == 0:
                    name = f"live_{update.time_step:06d}_z{update.start_z:05d}.npy"
                    np.save(output_path / name, update.field)

        worker = threading.Thread(target=self._worker, args=(wavefield_callback,), daemon=True)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(timeout=0.5)
        except KeyboardInterrupt:
            print("\n  Cancelling... (partial results will be saved)")
            self.cancel_event.set()
            worker.join()

        if self._error is not None:
            raise self._error

        self.save_results(output_path)

    def save_results(self, output_path: Path):
        """Write results and snapshots to disk"""
        results = self.results
        arrays: Dict[str, Any] = {
            'receiver_trace': results.receiver_trace,
            'time_step_seconds': results.time_step_seconds,
            'total_time_steps': results.total_time_steps,
            'p_wave_velocity': results.p_wave_velocity,
            's_wave_velocity': results.s_wave_velocity,
            'vp_vs_ratio': results.vp_vs_ratio,
        }
        for name in ('wave_field_vx', 'wave_field_vy', 'wave_field_vz',
                     'max_velocity_field', 'damage_field'):
            value = getattr(results, name)
            if value is not None:
                arrays[name] = value
        np.savez_compressed(output_path / "results.npz", **arrays)

        for snapshot in results.time_series_snapshots:
            np.save(output_path / f"snapshot_{snapshot.time_step:06d}.npy", snapshot.field)

        self.params.to_json(str(output_path / "parameters.json"))

        print()
        print("Simulation complete!" if not results.cancelled else "Simulation cancelled.")
        print(f"  • Steps completed: {results.total_time_steps}")
        print(f"  • Time step: {results.time_step_seconds:.3e} s")
        print(f"  • Wall-clock time: {results.computation_time:.2f} s ({results.kernel_name} kernel)")
        if results.p_wave_step:
            print(f"  • P-wave: {results.p_wave_velocity:.1f} m/s "
                  f"(arrival step {results.p_wave_step}, {results.p_wave_travel_time * 1e6:.2f} µs)")
        else:
            print("  • P-wave: not detected")
        if results.s_wave_step:
            print(f"  • S-wave: {results.s_wave_velocity:.1f} m/s "
                  f"(arrival step {results.s_wave_step}, {results.s_wave_travel_time * 1e6:.2f} µs)")
            print(f"  • Vp/Vs: {results.vp_vs_ratio:.3f}")
        else:
            print("  • S-wave: not detected")
        print(f"  • Snapshots saved: {len(results.time_series_snapshots)}")
        print(f"Outputs saved to: {output_path}")


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Chunked Elastic Wave Simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Homogeneous 100^3 sample, source on the top face, receiver at the bottom
  python main.py

  # Custom grid and material
  python main.py --size 200 200 400 --pixel-size 0.0005 --youngs 50000 --poisson 0.27

  # Real volumes (arrays indexed [z, y, x])
  python main.py --labels labels.npy --density density.npy --steps 3000

  # Force disk offloading by pretending the machine has 512 MB
  python main.py --size 256 256 512 --max-memory-mb 512 --offload-dir /scratch

  # Load configuration from file
  python main.py --config simulation.json
        """
    )

    # Configuration
    parser.add_argument('--config', type=str, help='Load parameters from JSON file')
    parser.add_argument('--save-config', type=str, help='Write effective parameters to JSON and exit')

    # Grid
    parser.add_argument('--size', type=int, nargs=3, default=[100, 100, 100],
                        metavar=('W', 'H', 'D'), help='Grid size in voxels')
    parser.add_argument('--pixel-size', type=float, default=1e-3, help='Voxel size (meters)')
    parser.add_argument('--steps', type=int, default=1000, help='Number of time steps')

    # Material
    parser.add_argument('--youngs', type=float, default=30000.0, help="Young's modulus (MPa)")
    parser.add_argument('--poisson', type=float, default=0.25, help='Poisson ratio')
    parser.add_argument('--rho', type=float, default=2700.0, help='Default density (kg/m³)')
    parser.add_argument('--confining', type=float, default=0.0, help='Confining pressure (MPa)')
    parser.add_argument('--cohesion', type=float, default=5.0, help='Cohesion (MPa)')
    parser.add_argument('--friction-angle', type=float, default=30.0, help='Failure angle (degrees)')
    parser.add_argument('--tensile-strength', type=float, default=0.0,
                        help='Tensile strength (MPa, 0 = 5%% of E)')
    parser.add_argument('--material-id', type=int, help='Only simulate voxels with this label')

    # Volumes
    parser.add_argument('--labels', type=str, help='Label volume (.npy)')
    parser.add_argument('--density', type=str, help='Density volume (.npy, kg/m³)')
    parser.add_argument('--youngs-volume', type=str, help="Young's modulus volume (.npy, MPa)")
    parser.add_argument('--poisson-volume', type=str, help='Poisson ratio volume (.npy)')

    # Source / receiver
    parser.add_argument('--tx', type=float, nargs=3, default=[0.5, 0.5, 0.0],
                        help='Transmitter position (normalized x y z)')
    parser.add_argument('--rx', type=float, nargs=3, default=[0.5, 0.5, 1.0],
                        help='Receiver position (normalized x y z)')
    parser.add_argument('--axis', type=str, default='z', choices=['x', 'y', 'z'],
                        help='Propagation axis')
    parser.add_argument('--energy', type=float, default=1.0, help='Source energy (J)')
    parser.add_argument('--frequency', type=float, default=500.0, help='Source frequency (kHz)')
    parser.add_argument('--amplitude', type=float, default=100.0, help='Source amplitude (%%)')
    parser.add_argument('--wavelet', type=str, default='ricker',
                        choices=['ricker', 'sinusoid', 'constant'], help='Source time function')
    parser.add_argument('--full-face', action='store_true', help='Use full-face transducers')

    # Physics
    parser.add_argument('--plastic', action='store_true', help='Enable Mohr-Coulomb plasticity')
    parser.add_argument('--brittle', action='store_true', help='Enable tensile damage')
    parser.add_argument('--stop-after-arrivals', action='store_true',
                        help='Stop early once P and S arrivals are picked')

    # Execution
    parser.add_argument('--gpu', action='store_true', help='Use the GPU kernel (falls back to CPU)')
    parser.add_argument('--no-offload', action='store_true', help='Never offload chunks to disk')
    parser.add_argument('--offload-dir', type=str, help='Directory for chunk offload files')
    parser.add_argument('--max-memory-mb', type=float, help='Assume this much RAM')
    parser.add_argument('--snapshot-interval', type=int, default=0,
                        help='Save a snapshot every N steps (0 = off)')
    parser.add_argument('--live-every', type=int, default=0,
                        help='Save live field updates every N steps (0 = off)')

    # Output
    parser.add_argument('--output', type=str, default='./output', help='Output directory')
    parser.add_argument('--log-file', type=str, help='Also write the log to this file')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')

    return parser.parse_args(argv)


def parameters_from_args(args) -> SimulationParameters:
    """Build parameters from parsed arguments"""
    if args.config:
        params = SimulationParameters.from_json(args.config)
        print(f"Loaded configuration from: {args.config}")
        return params

    return SimulationParameters(
        width=args.size[0], height=args.size[1], depth=args.size[2],
        pixel_size=args.pixel_size,
        total_time_steps=args.steps,
        youngs_modulus_mpa=args.youngs,
        poisson_ratio=args.poisson,
        density_kg_m3=args.rho,
        confining_pressure_mpa=args.confining,
        cohesion_mpa=args.cohesion,
        failure_angle_deg=args.friction_angle,
        tensile_strength_mpa=args.tensile_strength,
        selected_material_id=args.material_id,
        tx_position=tuple(args.tx),
        rx_position=tuple(args.rx),
        axis=Axis[args.axis.upper()],
        source_energy_j=args.energy,
        source_frequency_khz=args.frequency,
        source_amplitude=args.amplitude,
        wavelet=Wavelet[args.wavelet.upper()],
        use_full_face_transducers=args.full_face,
        use_plastic_model=args.plastic,
        use_brittle_model=args.brittle,
        stop_after_arrivals=args.stop_after_arrivals,
        use_gpu=args.gpu,
        enable_offloading=not args.no_offload,
        offload_directory=args.offload_dir,
        max_memory_mb=args.max_memory_mb,
        save_time_series=args.snapshot_interval > 0,
        snapshot_interval=max(1, args.snapshot_interval)
    )


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    try:
        params = parameters_from_args(args)
        if args.save_config:
            params.to_json(args.save_config)
            print(f"Configuration written to: {args.save_config}")
            return

        app = WaveSimulatorApp(params, volume_paths={
            'labels': args.labels,
            'density': args.density,
            'youngs_modulus': args.youngs_volume,
            'poisson_ratio': args.poisson_volume,
        })
        app.initialize()
        app.run_batch_simulation(output_dir=args.output, live_every=args.live_every)

    except KeyboardInterrupt:
        print("\n\nSimulation interrupted by user.")
    except Exception as e:
        print(f"\n\nError: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
