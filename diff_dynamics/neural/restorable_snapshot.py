# 可恢复的世界状态快照：进入时保存位置/速度/力、仿真时间以及上一步的求解结果，退出时（包括异常退出）无条件恢复，
# 有限差分与暴力求导在其中随意扰动并推进世界
class RestorableSnapshot(object):
    def __init__(self, world):
        """
        Args:
            world (World): 需要保存状态的世界
        """
        if world is None:
            raise ValueError("RestorableSnapshot needs a world")
        self.world = world
        self.positions = world.get_positions().clone()
        self.velocities = world.get_velocities().clone()
        self.forces = world.get_forces().clone()
        self.cur_time = world.cur_time
        # 扰动推进会覆盖这两项，恢复后它们仍描述进入前的最后一步
        self.last_solution = world.constraint_solver.last_solution
        self.last_unconstrained_velocities = world.last_unconstrained_velocities

    def restore(self):
        self.world.set_positions(self.positions)
        self.world.set_velocities(self.velocities)
        self.world.set_forces(self.forces)
        self.world.cur_time = self.cur_time
        self.world.constraint_solver.last_solution = self.last_solution
        self.world.last_unconstrained_velocities = self.last_unconstrained_velocities

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.restore()
        return False
