# 运行一段仿真并沿时间反向传播：
# 前向逐步推进并保存每一步的BackpropSnapshot，结束后以 “末状态某个自由度的位置” 为损失，
# 从最后一步往前依次调用backprop，得到损失对初始位置/速度以及每一步力矩的梯度
import os, sys
import json
import torch
from tqdm import tqdm

cur_work_path = os.getcwd()
sys.path.append(cur_work_path)

from diff_dynamics.builder import Builder
from diff_dynamics.neural.neural_utils import LossGradient, forward_pass
from diff_dynamics.utils.cfg_utils import config_parser, load_config
from diff_dynamics.utils.sys_utils import plot_trajectory, prepare_output_and_logger


def simulate(world, n_steps, sim_logger=None):
    """
    前向推进n_steps步
    Returns:
        snapshots: 每一步的BackpropSnapshot
        positions: 每一步之后的位置（形状[n_steps + 1, n]，含初始位置）
    """
    snapshots = []
    positions = [world.get_positions().clone()]
    progress_bar = tqdm(range(n_steps), desc="Forward Pass")
    for step in progress_bar:
        snapshot = forward_pass(world)
        snapshots.append(snapshot)
        positions.append(world.get_positions().clone())
        if sim_logger is not None:
            sim_logger.record("sim/time", world.cur_time)
            sim_logger.record("sim/num_clamping", snapshot.get_num_clamping())
            sim_logger.record("sim/num_upper_bound", snapshot.get_num_upper_bound())
            sim_logger.record("sim/kinetic_energy",
                              float(0.5 * world.get_velocities() @ world.get_mass_matrix() @ world.get_velocities()))
            sim_logger.dump(step)
        progress_bar.set_postfix({"clamping": snapshot.get_num_clamping()})
    progress_bar.close()
    return snapshots, torch.stack(positions)


def backprop_trajectory(world, snapshots, loss_dof_index, backprop_logger=None):
    """
    损失 = 末状态第loss_dof_index个自由度的位置
    Returns:
        initial_loss: 损失对初始状态的梯度（LossGradient）
        torque_gradients: 每一步损失对力矩的梯度
    """
    n = world.get_num_dofs()
    next_timestep_loss = LossGradient.zeros(n, world.device)
    next_timestep_loss.loss_wrt_position = next_timestep_loss.loss_wrt_position.index_fill(
        0, torch.tensor([loss_dof_index]), 1.0)
    torque_gradients = []
    for snapshot in tqdm(list(reversed(snapshots)), desc="Backward Pass"):
        this_timestep_loss = snapshot.backprop(world, LossGradient.zeros(n, world.device), next_timestep_loss,
                                               perf_log=backprop_logger)
        torque_gradients.append(this_timestep_loss.loss_wrt_torque)
        next_timestep_loss = this_timestep_loss
    if backprop_logger is not None:
        backprop_logger.dump(len(snapshots))
    return next_timestep_loss, list(reversed(torque_gradients))


def main():
    args = config_parser().parse_args()
    all_args = load_config(args.config)
    all_args, loggers = prepare_output_and_logger(all_args, need_logger=True,
                                                  format_strings=all_args['sys_args'].get('log_formats'))
    builder = Builder(all_args)
    world = builder.build_world(logger=loggers["simulation"])
    builder.build_scene(world)

    n_steps = int(all_args['sys_args'].get('n_steps', 100))
    loss_dof_index = int(all_args['sys_args'].get('loss_dof_index', 2))

    snapshots, positions = simulate(world, n_steps, loggers["simulation"])
    initial_loss, torque_gradients = backprop_trajectory(world, snapshots, loss_dof_index, loggers["backprop"])

    times = [world.dtime * i for i in range(n_steps + 1)]
    labels = [dof.name for dof in world.get_dofs()]
    loggers["simulation"].record("trajectory/positions", plot_trajectory(times, positions.numpy(), labels),
                                 exclude=("stdout", "log"))
    loggers["simulation"].dump(n_steps)

    result = {
        "final_positions": world.get_positions().tolist(),
        "loss_wrt_initial_position": initial_loss.loss_wrt_position.tolist(),
        "loss_wrt_initial_velocity": initial_loss.loss_wrt_velocity.tolist(),
        "loss_wrt_first_torque": torque_gradients[0].tolist() if torque_gradients else [],
    }
    with open(os.path.join(all_args['sys_args']['output_path'], "gradients.json"), 'w') as json_file:
        json.dump(result, json_file, indent=4)
    world.save_all_physical_materials(os.path.join(all_args['sys_args']['output_path'], "physical_materials.json"))
    print("loss_wrt_initial_velocity", result["loss_wrt_initial_velocity"])

    for logger in loggers.values():
        logger.close()


if __name__ == '__main__':
    main()
